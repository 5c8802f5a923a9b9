"""Setup script for the Checkout Engine."""

from setuptools import setup, find_packages

setup(
    name="checkout-engine",
    version="1.0.0",
    description="Inventory reservation, order creation and payment reconciliation service",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["checkout_engine", "checkout_engine.*"]),
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
            "httpx>=0.26.0",
            "fakeredis[lua]>=2.21.0",
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
            "checkout-api=checkout_engine.api.main:run",
            "checkout-reclaimer=checkout_engine.workers.reclaimer_worker:main",
            "checkout-payment-events=checkout_engine.workers.payment_events_worker:main",
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
