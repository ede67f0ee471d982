[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmbootstrap"
version = "0.1.0"
description = "Building blocks for bootstrapping vSphere VMs from installer ISOs: download, patch, seed, upload and mount."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "vsphere",
    "vcenter",
    "vmware",
    "iso",
    "iso9660",
    "cloud-init",
    "nocloud",
    "autoinstall",
    "govc",
    "provisioning",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Installation/Setup",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vmbootstrap"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
