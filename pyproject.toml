[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "feedstore"
version = "0.1.0"
description = "Embedded storage for feeds: append-only chunk files, primary, inverted and HNSW vector indexes, and a small key-value store."
requires-python = ">=3.10"
dependencies = []
keywords = ["storage", "feeds", "index", "hnsw", "vector-search", "inverted-index", "key-value"]
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
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["feedstore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
