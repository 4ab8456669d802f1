[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "conjuronboard"
version = "0.1.0"
description = "Discover GitHub and Jenkins workloads and validate, apply and roll back Conjur onboarding plans"
requires-python = ">=3.10"
dependencies = [
    "httpx",
]
keywords = ["conjur", "onboarding", "jwt", "oidc", "github-actions", "jenkins", "secrets"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Security",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["conjuronboard"]

[tool.pytest.ini_options]
addopts = "-ra"
