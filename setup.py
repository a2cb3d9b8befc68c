"""Setup script for cicd-demo-app"""

from setuptools import setup, find_packages

setup(
    name="cicd-demo-app",
    version="1.0.0",
    packages=find_packages(where="service", exclude=["tests", "tests.*"]),
    package_dir={"": "service"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "pydantic>=2.5.0",
        "httpx>=0.25.0",
        "python-dotenv>=1.0.0",
        "toml>=0.10.2",
        "redis>=5.0.0",
        "prometheus-client>=0.19.0",
        "opentelemetry-api>=1.22.0",
        "opentelemetry-sdk>=1.22.0",
        "opentelemetry-exporter-otlp-proto-grpc>=1.22.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cicd-demo-server=cicd_demo.api.server:main",
        ],
    },
)
