"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="campus-dm",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "structlog>=23.1",
        "prometheus-client>=0.17",
        "opentelemetry-instrumentation-fastapi>=0.42b0",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.28",
        "PyJWT>=2.8",
        "redis>=5.0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
            "httpx>=0.25",
            "aiosqlite>=0.19",
        ],
    },
)
