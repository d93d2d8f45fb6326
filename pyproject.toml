[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "holepunch"
version = "0.1.0"
description = "UDP hole punching toolkit: a rendezvous server, a discovery client, a KCP reliable-UDP core, packet ciphers and framing for peer-to-peer tunnels."
requires-python = ">=3.10"
keywords = [
    "p2p",
    "nat-traversal",
    "hole-punching",
    "udp",
    "kcp",
    "rendezvous",
    "tunnel",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "pycryptodome",
    "cryptography",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
holepunch-server = "holepunch.rendezvous:main"
holepunch-client = "holepunch.discovery:main"

[tool.hatch.build.targets.wheel]
packages = ["holepunch"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
