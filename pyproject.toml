[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "s3mount"
version = "0.1.0"
description = "Prefetching object reads, thread-local metrics aggregation and the option handling of a command for mounting an S3 bucket"
requires-python = ">=3.10"
dependencies = []
keywords = ["s3", "filesystem", "mount", "prefetch", "metrics", "object-storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
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
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
mount-s3 = "s3mount.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["s3mount"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
