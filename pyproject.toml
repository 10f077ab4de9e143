[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wright"
version = "1.2.4"
description = "Declarative package build orchestration: layered configuration, lifecycle stages, source handling and dependency-ordered scheduling"
requires-python = ">=3.11"
keywords = ["package-manager", "build", "dependencies", "bootstrap", "linux"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wright"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"
