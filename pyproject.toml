[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "posttunnel"
version = "0.1.0"
description = "A SOCKS5 proxy and DNS relay that carries TCP sessions and DNS queries inside HTTP POST exchanges"
requires-python = ">=3.10"
dependencies = []
keywords = ["socks5", "tunnel", "proxy", "http", "dns", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
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

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
posttunnel-client = "posttunnel.client:main"
posttunnel-server = "posttunnel.server:main"

[tool.hatch.build.targets.wheel]
packages = ["posttunnel"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
