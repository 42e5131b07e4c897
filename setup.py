from setuptools import setup


setup(
    name="localnet-harness",
    version="0.1.0",
    description="Ephemeral Sui localnet harness for integration tests",
    packages=["localnet_harness"],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "solders>=0.21",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
