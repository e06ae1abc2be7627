[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubehelper"
version = "1.0.0"
description = "Model Context Protocol tools for inspecting and rollout-restarting Kubernetes clusters kept in a PostgreSQL inventory"
requires-python = ">=3.10"
keywords = ["kubernetes", "mcp", "model-context-protocol", "json-rpc", "sse", "devops"]
classifiers = [
    "Development Status :: 4 - Beta",
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
]
dependencies = [
    "cryptography",
    "sqlalchemy",
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kubehelper"]

[tool.pytest.ini_options]
addopts = "-ra"
