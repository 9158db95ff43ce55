"""Setup script for the governor package."""

from setuptools import find_packages, setup

setup(
    name="issue-governor",
    version="0.1.0",
    description="Issue scheduling governor with a shared, atomically-claimed work queue",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["governor", "governor.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "governor-admin=governor.cli:main",
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
