[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rdpwire"
version = "0.1.0"
description = "Pure-Python encoders, decoders and connection state machines for the lower RDP layers: TPKT, X.224, GCC, MCS and server certificates"
requires-python = ">=3.10"
dependencies = []
keywords = ["rdp", "remote-desktop", "tpkt", "x224", "t125", "mcs", "gcc", "ber", "per", "protocol"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rdpwire"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
