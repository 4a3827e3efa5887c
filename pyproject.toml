[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "spvscan"
version = "0.1.0"
description = "Light-client chain rescans and UTXO spend scanning driven by compact block filters"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin-cash", "spv", "rescan", "utxo", "compact-filters", "wallet"]
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
    "Topic :: Office/Business :: Financial",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["spvscan"]

[tool.pytest.ini_options]
addopts = "-ra"
