"""
Setup script for CryptoPayLink.
"""

import os

from setuptools import find_packages, setup


# Read the README file
def read_readme():
    with open("README.md", "r", encoding="utf-8") as fh:
        return fh.read()


# Read requirements
def read_requirements():
    req_path = os.path.join(os.path.dirname(__file__), "requirements.txt")
    with open(req_path) as f:
        return [line for line in f.read().splitlines() if line.strip() and not line.startswith("#")]


setup(
    name="cryptopaylink",
    version="0.1.0",
    description="Verification and settlement engine for USD-priced products paid in crypto",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Office/Business :: Financial",
        "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
    ],
    python_requires=">=3.10",
    install_requires=read_requirements(),
    extras_require={
        "dev": [
            "pytest>=8.4.0",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.10.0",
            "black>=25.1.0",
            "flake8>=7.0.0",
            "isort>=6.0.0",
            "mypy>=1.10.0",
            "bandit>=1.8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cryptopaylink=cli.main:main",
        ],
    },
    keywords=[
        "crypto",
        "payments",
        "solana",
        "ethereum",
        "usdc",
        "usdt",
        "verification",
        "settlement",
    ],
)
