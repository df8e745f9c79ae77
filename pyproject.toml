[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hashchat"
version = "0.1.0"
description = "A small TCP chat server and client with registration, online list, direct messages and file transfer"
requires-python = ">=3.10"
dependencies = []
keywords = ["chat", "tcp", "socket", "file-transfer", "md5", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hashchat-server = "hashchat.server:main"
hashchat-client = "hashchat.client:main"

[tool.hatch.build.targets.wheel]
packages = ["hashchat"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
