[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "erofstools"
version = "0.1.0"
description = "Check, dump and extract EROFS filesystem images through a pluggable image reader"
requires-python = ">=3.10"
dependencies = []
keywords = ["erofs", "filesystem", "image", "fsck", "extract", "android", "fs_config", "file_contexts"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Archiving",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["erofstools"]

[tool.hatch.build.targets.sdist]
include = ["erofstools", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
