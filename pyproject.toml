[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kadlookup"
version = "0.1.0"
description = "Kademlia lookup machinery: query peer sets, provider records, routing-table refresh and value search"
requires-python = ">=3.10"
dependencies = []
keywords = ["kademlia", "dht", "peer-to-peer", "routing", "lookup"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kadlookup"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
