[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgtunnel"
version = "0.1.0"
description = "WireGuard-style tunnel building blocks: UDP binds, allowed-IP routing trie, Noise handshake and cookie MACs"
requires-python = ">=3.10"
keywords = ["wireguard", "vpn", "noise", "udp", "tunnel", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Networking",
]
dependencies = [
    "pynacl",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wgtunnel"]

[tool.pytest.ini_options]
addopts = "-ra"
