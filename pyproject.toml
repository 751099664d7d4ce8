[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "idevkit"
version = "0.1.0"
description = "Protocol toolkit for talking to iOS device services over usbmuxd and lockdown"
requires-python = ">=3.10"
dependencies = []
keywords = ["ios", "usbmuxd", "lockdown", "plist", "nskeyedarchiver", "pcap", "screenshot"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["idevkit"]

[tool.pytest.ini_options]
addopts = "-ra"
