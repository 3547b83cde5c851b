[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ratelimitsvc"
version = "0.1.0"
description = "A descriptor-based rate limiting service core: request checking, HTTP JSON endpoint, health checks, stats, tracing and SRV discovery."
requires-python = ">=3.10"
keywords = ["rate limiting", "ratelimit", "descriptors", "service", "http", "health check", "stats", "srv"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: System :: Networking",
]
dependencies = [
    "dnspython",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ratelimitsvc"]

[tool.hatch.build.targets.sdist]
include = ["ratelimitsvc", "tests", "README.md", "pyproject.toml"]

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
