"""Setup configuration for sparklet package."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="sparklet",
    version="0.1.0",
    author="sparklet developers",
    description="ML pipelines and cross validation on a lazily evaluated, partitioned dataset engine",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["sparklet", "sparklet.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
        "pandas>=1.5.0",
        "numpy>=1.21.0",
        "pyarrow>=10.0.0",
        "scikit-learn>=1.1.0",
        "click>=8.0.0",
        "rich>=12.0.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=1.0.0",
        ],
        "distributed": [
            "dask[distributed]>=2023.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sparklet=sparklet.cli:main",
        ],
    },
)
