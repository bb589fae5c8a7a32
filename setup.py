from setuptools import setup, find_packages

setup(
    name="pharmalingo-progress",
    version="1.0.0",
    packages=find_packages(),
    install_requires=[
        "fastapi>=0.100.0",
        "pydantic>=2.0.0,<3.0.0",
        "sqlalchemy[asyncio]>=2.0.0,<3.0.0",
        "aiosqlite>=0.19.0",
        "redis>=5.0.1",
        "PyYAML>=6.0",
        "python-dotenv>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
        ],
    },
    python_requires=">=3.9",
)
