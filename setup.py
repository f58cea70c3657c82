"""Packaging for aku-substrate: content-addressed knowledge store with derived SQLite indexes."""

from setuptools import find_packages, setup

setup(
    name="aku-substrate",
    version="0.1.0",
    description="Content-addressed knowledge store: immutable atoms on disk, rebuildable graph/temporal/FTS/vector indexes",
    python_requires=">=3.11",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "click>=8.1",
        "numpy>=1.26",
        "pyyaml>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "embeddings": [
            "diskcache>=5.6",
            "fastembed>=0.3",
        ],
        "test": [
            "pytest>=8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "aku=aku.cli:cli",
        ],
    },
)
