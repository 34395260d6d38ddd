[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ttrpc"
version = "0.1.0"
description = "A lightweight RPC protocol over Unix domain sockets, with a threaded client and server."
requires-python = ">=3.10"
dependencies = []
keywords = ["rpc", "ttrpc", "protobuf", "unix-socket", "vsock", "ipc"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.hatch.build.targets.wheel]
packages = ["ttrpc"]

[tool.pytest.ini_options]
addopts = "-ra"
