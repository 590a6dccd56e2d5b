"""
Setup script for the license billing engine
"""
from setuptools import setup, find_packages

setup(
    name="license-billing",
    version="0.1.0",
    description="Seat-based license billing: cycles, prorated adjustments, payments and tax",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "sqlalchemy>=2.0",
        "pydantic>=2.5",
        "alembic>=1.13",
        "python-dotenv>=1.0",
        "psycopg2-binary>=2.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "httpx>=0.26",
        ],
    },
)
