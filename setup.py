"""Setup script for the ReasonChain package."""

from setuptools import setup, find_packages

setup(
    name="reasonchain",
    version="0.1.0",
    packages=find_packages(include=["reasonchain", "reasonchain.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "python-dotenv>=1.0",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "tenacity>=8.2",
        "httpx>=0.27",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "redis>=5.0",
        "qdrant-client>=1.10",
        "asyncpg>=0.29",
        "prometheus-client>=0.20",
    ],
    extras_require={
        "embeddings": ["sentence-transformers>=2.7"],
        "test": ["pytest>=8.0", "pytest-asyncio>=0.23", "httpx>=0.27"],
    },
    description="ReasonChain - complexity routing, plan execution and confidence aggregation for multi-agent reasoning",
    author="NeuraForge Team",
)
