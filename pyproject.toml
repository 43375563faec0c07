[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kloset"
version = "0.1.0"
description = "Storage primitives for a content-addressed backup repository: resource types, file metadata, objects, packfiles and packers."
requires-python = ">=3.10"
keywords = ["backup", "deduplication", "packfile", "snapshot", "storage"]
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
    "Topic :: System :: Archiving :: Backup",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "msgpack>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["kloset"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
