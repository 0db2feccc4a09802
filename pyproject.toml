[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsrelay"
version = "0.1.0"
description = "A forwarding DNS proxy with per-domain upstream routing, rate limiting and DoH/DoQ message handling"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = ["dns", "proxy", "forwarder", "doh", "doq", "resolver", "ratelimit"]
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
    "Topic :: Internet :: Name Service (DNS)",
]

[project.optional-dependencies]
test = [
    "pytest",
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
warn_unused_ignores = true
