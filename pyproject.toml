[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "magnetleech"
version = "0.1.0"
description = "BitTorrent metadata fetching: torrent metainfo, magnet links, MSE-encrypted peer handshakes and ut_metadata leeching"
requires-python = ">=3.10"
dependencies = []
keywords = ["bittorrent", "magnet", "metainfo", "bencode", "dht", "ut_metadata", "mse"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["magnetleech"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
