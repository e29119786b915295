[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "peershare"
version = "0.1.0"
description = "Peer-to-peer file sharing with AES-encrypted storage, a command-line tool and a small web interface"
requires-python = ">=3.10"
keywords = ["p2p", "file-sharing", "encryption", "aes", "peer-to-peer"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: Web Environment",
    "Framework :: Flask",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]
dependencies = [
    "cryptography",
    "flask",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
peershare = "peershare.cli:main"
peershare-web = "peershare.web:main"

[tool.hatch.build.targets.wheel]
packages = ["peershare"]

[tool.pytest.ini_options]
addopts = "-ra"
