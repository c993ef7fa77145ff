[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modproxy"
version = "0.1.0"
description = "Building blocks for a Go module proxy: errors, filtering, indexing, fetching, stashing and WSGI middleware"
requires-python = ">=3.10"
dependencies = []
keywords = ["go", "modules", "proxy", "wsgi", "middleware", "cache"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["modproxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
