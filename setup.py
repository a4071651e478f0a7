"""Package setup for Tax Jurisdiction Engine."""

from setuptools import setup, find_packages

setup(
    name="tax-jurisdiction-engine",
    version="1.0.0",
    description="Address-to-jurisdiction resolution and auditable tax calculation for billing systems",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["jurisdiction_engine", "jurisdiction_engine.*"]),
    python_requires=">=3.10",
    install_requires=[
        "rich>=13.0",
        "pandas>=2.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "jurisdiction-engine=jurisdiction_engine.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Financial :: Accounting",
    ],
    keywords="sales-tax telecom-tax jurisdiction address-resolution billing",
)
