"""Lower RDP protocol layers: TPKT, X.224, GCC, MCS, server certificates and BER/PER helpers."""

__version__ = "0.1.0"

__all__ = ["asn1", "certificate", "gcc", "layer", "mcs", "tpkt", "x224"]