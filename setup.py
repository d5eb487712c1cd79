#!/usr/bin/env python3
"""Setup configuration for kiwi-wspr package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read long description from README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="kiwi-wspr",
    version="1.0.0",
    description="Multi-receiver WSPR spot ingestion daemon for KiwiSDR",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    
    python_requires=">=3.9",
    
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.7.0",
        "toml>=0.10.0",
        "PyYAML>=5.4",
        "paho-mqtt>=2.0.0",
    ],
    
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
        ],
    },
    
    entry_points={
        "console_scripts": [
            "kiwi-wspr=kiwi_wspr.main:main",
        ],
    },
    
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Communications :: Ham Radio",
        "Topic :: Scientific/Engineering :: Atmospheric Science",
    ],
    
    keywords="wspr kiwisdr wsprd mqtt ham radio propagation",
)
