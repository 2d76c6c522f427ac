[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "upfcore"
version = "0.1.0"
description = "User plane function core: PFCP rule handling, packet matching, sessions, and GTP-U echo and buffering"
requires-python = ">=3.10"
dependencies = []
keywords = ["5g", "upf", "pfcp", "gtp-u", "n4", "user-plane", "packet-matching"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["upfcore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
