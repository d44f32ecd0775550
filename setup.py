from setuptools import find_packages, setup

setup(
    name="apiver",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pycryptodomex>=3.15",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "apiver=apiver.cli:main",
        ],
    },
    python_requires=">=3.10",
    description="apiver: API versioning without duplication, via encrypted snapshots and patches",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Version Control",
        "Programming Language :: Python :: 3.12",
    ],
)
