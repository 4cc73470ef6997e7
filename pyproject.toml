[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "proxytunnel"
version = "0.1.0"
description = "Composable proxy tunnel layers (SOCKS5, HTTP, dokodemo, router, direct) with per-user traffic accounting"
requires-python = ">=3.10"
keywords = ["proxy", "socks5", "http-proxy", "tunnel", "router", "traffic-accounting"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "pymysql",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["proxytunnel"]

[tool.hatch.build.targets.sdist]
include = ["proxytunnel", "tests"]

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
