[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hpool"
version = "0.1.0"
description = "A region-style memory pool with small-block arenas, large allocations and cleanup hooks"
requires-python = ">=3.10"
dependencies = []
keywords = ["memory pool", "arena", "allocator", "region", "cleanup"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hpool = "hpool.demo:main"

[tool.hatch.build.targets.wheel]
packages = ["hpool"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
