[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "popcorn"
version = "0.1.0"
description = "A small asyncio application framework that starts modules in dependency order and connects them with an event bus."
requires-python = ">=3.11"
keywords = ["framework", "modules", "lifecycle", "event bus", "asyncio", "dependency order"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]
dependencies = [
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
popcorn-demo = "popcorn.demo:main"

[tool.hatch.build.targets.wheel]
packages = ["popcorn"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
