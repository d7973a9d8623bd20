[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dagsflow"
version = "0.1.0"
description = "A small cron-driven DAG scheduler with branching, trigger rules and shared XCom values"
requires-python = ">=3.10"
dependencies = []
keywords = ["dag", "scheduler", "workflow", "cron", "pipeline"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
dagsflow = "dagsflow.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["dagsflow"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
