from setuptools import setup, find_packages

setup(
    name="gateway-operator",
    version="0.1.0",
    description="Kubernetes operator for Kong DataPlanes and Konnect configuration entities",
    author="Kong",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.11",
    install_requires=[
        "kopf>=1.37.0",
        "kubernetes>=28.1.0",
        "aiohttp>=3.9.0",
        "pyyaml>=6.0",
        "cryptography>=42.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "gateway-operator=gateway_operator.operator:main",
        ],
    },
)
