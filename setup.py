"""Setup script for nightshift package."""

from setuptools import find_packages, setup

setup(
    name="nightshift",
    version="0.1.0",
    description="Autonomous task-execution daemon for Claude Code",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["nightshift", "nightshift.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "croniter>=2.0",
        "requests>=2.28",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "nightshift=nightshift.cli:main",
            "nightshift-daemon=nightshift.daemon:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
