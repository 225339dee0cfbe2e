[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "contrafactory"
version = "0.1.0"
description = "Storage, validation, a deployments JSON API and WSGI middleware for a smart-contract package registry."
requires-python = ">=3.10"
keywords = ["smart-contracts", "registry", "deployments", "wsgi", "middleware", "sqlite", "evm"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
    "Topic :: Database",
]
dependencies = [
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["contrafactory"]

[tool.pytest.ini_options]
addopts = "-ra"
