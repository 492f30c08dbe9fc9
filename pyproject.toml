[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pubdatahub"
version = "0.1.0"
description = "Query engine with caching, sessions and exports, plus graceful shutdown and state recovery for data hub applications"
requires-python = ">=3.10"
dependencies = []
keywords = ["query", "cache", "export", "shutdown", "recovery", "state"]
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
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pubdatahub"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
