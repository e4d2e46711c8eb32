[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gitsync"
version = "0.1.0"
description = "Peer-to-peer networking core for repository synchronisation: discovery, wire protocol, congestion control and bandwidth management"
requires-python = ">=3.10"
dependencies = []
keywords = ["p2p", "sync", "git", "congestion-control", "rate-limiting", "peer-discovery"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gitsync"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
