from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="hydrorating",
    version="0.1.0",
    author="Your Name",
    author_email="your.email@example.com",
    description="Stage-discharge rating curve uncertainty analysis: GAM ratings, dynamic Kalman ratings and Bayesian propagation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/YOUR_USERNAME/hydrorating",
    packages=find_packages(include=["hydrorating", "hydrorating.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Hydrology",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=1.5.0",
        "matplotlib>=3.4.0",
        "scipy>=1.10.0",
        "requests>=2.25.0",
        "click>=8.0",
        "pygam>=0.9.0",
        "statsmodels>=0.14.0",
        "pymc>=5.10",
        "pytensor>=2.18",
        "arviz>=0.17,<1.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0", "pytest-cov", "black", "flake8"],
    },
    entry_points={
        "console_scripts": ["hydrorating=hydrorating.cli:cli"],
    },
)
