import os

import setuptools
from setuptools import setup


def readme():
    with open("README.rst", encoding="utf-8") as f:
        return f.read()


# Read in version
__version__: str = ""  # This is overridden by the next line
exec(open(os.path.join("exactTSNE", "version.py")).read())

setup(
    name="exactTSNE",
    description="Exact O(N^2) t-SNE with perplexity calibration and gradient descent",
    long_description=readme(),
    long_description_content_type="text/x-rst",
    version=__version__,
    license="BSD-3-Clause",

    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Intended Audience :: Developers",
        "Topic :: Software Development",
        "Topic :: Scientific/Engineering",
        "Operating System :: OS Independent",
        "License :: OSI Approved",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Scientific/Engineering :: Visualization",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],

    packages=setuptools.find_packages(include=["exactTSNE", "exactTSNE.*"]),
    python_requires=">=3.7",
    install_requires=[
        "numpy>=1.14.6",
        "scikit-learn>=0.20",
        "joblib",
    ],
    extras_require={
        "test": ["pytest", "scipy"],
    },
)
