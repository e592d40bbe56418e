[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dpqchat"
version = "0.1.0"
description = "Peer-to-peer chat networking: flood routing, session encryption, TLS transport and peer discovery"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = [
    "chat",
    "p2p",
    "peer-to-peer",
    "tls",
    "aes-gcm",
    "asyncio",
    "multicast",
    "discovery",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["dpqchat"]

[tool.hatch.build.targets.sdist]
include = [
    "dpqchat",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
