"""Setup script for the dagforge package."""

from setuptools import setup, find_packages

setup(
    name="dagforge",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    package_data={"dagforge": ["catalog/*.json", "catalog/tools/*.tool.json"]},
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "python-dotenv>=1.0",
        "structlog>=24.1",
        "tenacity>=8.2",
        "httpx>=0.27",
        "prometheus-client>=0.19",
        "jinja2>=3.1",
        "asyncpg>=0.29",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "pytest-httpx>=0.30",
        ],
    },
    description="dagforge - objective decomposition and dependency-graph execution engine",
    author="dagforge team",
)
