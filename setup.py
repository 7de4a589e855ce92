"""Setup script for the tip payment and payout reconciliation service."""

from setuptools import setup, find_packages

setup(
    name="tip-reconciliation",
    version="1.0.0",
    description="M-Pesa tip payments and staff payouts with callback and status reconciliation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["tip_reconciliation", "tip_reconciliation.*"]),
    package_data={"tip_reconciliation.database": ["migrations/versions/*.py"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tip-outbox-publisher=tip_reconciliation.workers.outbox_publisher:main",
            "tip-reconciliation-sweeper=tip_reconciliation.workers.reconciliation_sweeper:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
