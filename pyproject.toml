[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsrelay"
version = "0.1.0"
description = "A forwarding DNS proxy library with per-domain upstream routing, rate limiting and DNS-over-HTTPS/QUIC message helpers"
requires-python = ">=3.10"
keywords = ["dns", "proxy", "forwarder", "doh", "doq", "asyncio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Internet :: Name Service (DNS)",
]
dependencies = [
    "dnspython>=2.3",
    "cachetools>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
