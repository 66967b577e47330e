[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "remotecache"
version = "0.1.0"
description = "A filesystem-backed LRU cache for build artifacts, with content-addressed storage, chunked zstd-compressed blobs and an optional proxy backend."
requires-python = ">=3.10"
keywords = ["cache", "build", "remote-cache", "cas", "action-cache", "lru", "zstd"]
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
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Filesystems",
]
dependencies = [
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["remotecache"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
