[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "repack_alter"
version = "1.0.0"
description = "Rebuild PostgreSQL tables and indexes online, with brief exclusive locks, and optionally apply a restricted ALTER TABLE clause."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "postgresql",
    "repack",
    "vacuum",
    "cluster",
    "bloat",
    "alter table",
    "online",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
repack-alter = "repack_alter.runner:main"

[tool.hatch.build.targets.wheel]
packages = ["repack_alter"]

[tool.pytest.ini_options]
addopts = "-ra"
