[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "armiarma"
version = "2.0.0"
description = "Building blocks for a libp2p network crawler: peer models, batched PostgreSQL persistence, network statistics and peer discovery bookkeeping."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "libp2p",
    "crawler",
    "ethereum",
    "consensus-layer",
    "peer-discovery",
    "network-monitoring",
    "postgresql",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["armiarma"]

[tool.hatch.build.targets.sdist]
include = ["armiarma", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
