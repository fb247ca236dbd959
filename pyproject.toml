[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "siren"
version = "0.1.0"
description = "WebSocket tunnel server that accepts VLESS, VMess, Trojan and Shadowsocks streams and relays them to TCP upstreams"
requires-python = ">=3.10"
keywords = ["proxy", "websocket", "tunnel", "vless", "vmess", "trojan", "shadowsocks", "aiohttp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
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
    "aiohttp>=3.9",
    "cryptography>=41",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
siren = "siren.server:main"

[tool.hatch.build.targets.wheel]
packages = ["siren"]

[tool.hatch.build.targets.sdist]
include = ["siren", "tests", "README.md", "pyproject.toml"]

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
