"""Setup script for the subscription billing service."""

from setuptools import setup, find_packages

setup(
    name="subscription-billing",
    version="1.0.0",
    description="Trading journal subscriptions billed through Cardcom hosted payment pages",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.24.0",
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
            "billing-api=api.main:main",
            "billing-worker=workers.billing_worker:main",
            "outbox-publisher=workers.outbox_publisher:main",
            "reconciliation-worker=workers.reconciliation_worker:main",
            "webhook-retry-worker=workers.webhook_retry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
