"""
Setup script for the BrainAI bot package
"""
from setuptools import setup, find_packages

setup(
    name="brainai_bot",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "sqlalchemy>=2.0",
        "httpx>=0.24",
        "python-dotenv>=1.0",
        "psycopg2-binary>=2.9",
        "apscheduler>=3.10,<4",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "brainai-bot=brainai_bot.webhook_server:main",
        ],
    },
)
