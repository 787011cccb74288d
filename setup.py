"""
MobileOps AI Core
Process supervisor and durable registry for inference engines, models and plugins
"""

from setuptools import find_packages, setup

setup(
    name="mobileops-ai-core",
    version="0.1.0",
    description="MobileOps AI core engine, model and plugin manager",
    author="MobileOps Project",
    license="Apache License 2.0",
    packages=find_packages(include=["ai_core", "ai_core.*"]),
    python_requires=">=3.10",
    install_requires=[
        "psutil>=5.9.0",
        "pyyaml>=6.0",
        "aiohttp>=3.9.0,<3.14",  # aioresponses 0.7.x is incompatible with aiohttp 3.14
    ],
    extras_require={
        "gpu": [
            "nvidia-ml-py>=12.0.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "aioresponses>=0.7.4",
            "ruff>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ai-core=ai_core.cli:main",
        ],
    },
)
