"""
Setup configuration for barkcron package.
"""

from setuptools import setup
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="barkcron",
    version="1.0.0",
    description="Run Python scripts on cron schedules and push their results as Bark notifications",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=["barkcron"],

    # Dependencies
    install_requires=[
        "apscheduler>=3.10,<4",
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement (zoneinfo)
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "barkcron=barkcron.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Monitoring",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="cron scheduler bark push notifications apscheduler",

    # Include package data
    include_package_data=True,
)
