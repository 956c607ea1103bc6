[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rirc"
version = "0.1.7"
description = "IRC client core: reconnecting connection state machine, IRCv3 capability negotiation and SASL, and command-line server setup"
requires-python = ">=3.10"
dependencies = []
keywords = ["irc", "ircv3", "sasl", "chat", "client", "tls"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat :: Internet Relay Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rirc = "rirc.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rirc"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
