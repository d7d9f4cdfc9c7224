#!/usr/bin/env python3
"""
Live Preview Setup
Static site preview with automatic browser reload
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="livepreview",
    version="0.1.0",
    author="Live Preview Contributors",
    description="Preview static web projects with automatic browser reload",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.24.0",
        "pydantic>=2.0.0",
        "websockets>=11.0.0",
        "structlog>=23.0.0",
        # CLI dependencies
        "click>=8.0.0",
        "rich>=13.0.0",
        "pyyaml>=6.0.0",
        # Preview server dependencies
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "watchdog>=3.0.0",  # File watching for host and preview server
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "livepreview=livepreview.cli.main:main",
        ],
    },
)
