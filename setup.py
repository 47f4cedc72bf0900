from setuptools import setup, find_packages

setup(
    name="driftfit",
    version="0.1.0",
    description="Iterative least-squares track fitter for cylindrical and planar drift chambers",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["driftfit", "driftfit.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "pandas",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for running main.py
            "driftfit=driftfit.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
