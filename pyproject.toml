[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "redisc"
version = "0.1.0"
description = "Redis cluster client with slot-aware routing, redirection handling, read-only replicas and cluster pipelines"
requires-python = ">=3.10"
dependencies = []
keywords = ["redis", "redis-cluster", "cluster", "client", "resp", "pipeline", "hash-slot"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["redisc"]

[tool.hatch.build.targets.sdist]
include = ["redisc", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
