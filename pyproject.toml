[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sectorfs"
version = "0.1.0"
description = "Block devices with an LRU sector cache, MBR/GPT partition scanning, a FAT32 filesystem and an ELF64 loader, in pure Python"
requires-python = ">=3.10"
dependencies = []
keywords = ["fat32", "filesystem", "block device", "partition", "gpt", "mbr", "elf"]
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
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["sectorfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
