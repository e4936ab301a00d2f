from setuptools import setup, find_namespace_packages

setup(
    name="strata",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["strata", "strata.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "python-dotenv>=1.0",
        "fastapi>=0.100",
        "uvicorn>=0.23",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "strata=strata.CLI.main:main",
        ],
    },
)
