from setuptools import setup, find_packages

setup(
    name="mancy",
    version="2.0.1",
    packages=find_packages(include=["mancy", "mancy.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "httpx>=0.27",
        "openai>=1.30",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.20",
        "redis>=5.0",
    ],
    extras_require={
        "postgres": [
            "asyncpg>=0.29",
        ],
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
