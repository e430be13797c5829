[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "csi-operator"
version = "0.1.0"
description = "Object hooks, an in-memory cluster view and an EBS volume tag reconciler for CSI driver operators"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "csi",
    "kubernetes",
    "operator",
    "storage",
    "aws",
    "ebs",
    "efs",
    "azure",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["csi_operator"]

[tool.hatch.build.targets.sdist]
include = ["csi_operator", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
