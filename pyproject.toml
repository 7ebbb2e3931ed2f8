[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mdwiki"
version = "0.1.3"
description = "Building blocks for compiling local Markdown notes into offline wiki output, catalogs and context packs."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["markdown", "wiki", "notes", "offline", "context"]
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
    "Topic :: Text Processing :: Markup :: Markdown",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["mdwiki"]

[tool.pytest.ini_options]
addopts = "-ra"
