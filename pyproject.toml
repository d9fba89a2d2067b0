[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dbkernel"
version = "0.1.0"
description = "LRU-K frame replacement, two-phase locking with deadlock detection, and grouped aggregation for a database engine"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "database",
    "lru-k",
    "page-replacement",
    "lock-manager",
    "two-phase-locking",
    "deadlock-detection",
    "aggregation",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dbkernel"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
