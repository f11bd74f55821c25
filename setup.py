# Project Setup Configuration

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="filkollen",
    version="2.0.0",
    author="FilKollen Team",
    description="Host threat detection and quarantine agent",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: Security",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=[
        "watchdog>=3.0.0",
        "psutil>=5.9.7",
        "structlog>=24.1.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "filkollen=filkollen.__main__:main",
        ],
    },
)
