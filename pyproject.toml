[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rootlesskit"
version = "2.0.1+dev"
description = "Building blocks for rootless containers on Linux: subordinate ID mapping, state-directory locking, cgroup2 evacuation, signal forwarding and port drivers"
requires-python = ">=3.12"
dependencies = []
keywords = [
    "rootless",
    "containers",
    "user-namespace",
    "port-forwarding",
    "cgroup2",
    "subuid",
    "newuidmap",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rootlesskit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
