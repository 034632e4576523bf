from setuptools import setup, find_namespace_packages

setup(
    name="aperture_controller",
    version="0.1.0",
    description="Aperture delta-neutral position rebalance controller for Terra",
    author="Aperture Finance",
    packages=find_namespace_packages(
        include=["utils", "schemas", "sources", "executors", "monitoring", "risk", "services", "tasks"],
    ),
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.28",
        "pydantic>=2.5",
        "python-dotenv>=1.0",
        "prometheus-client>=0.22",
    ],
    extras_require={
        "test": ["pytest>=8.2", "pytest-asyncio>=0.23"],
        "dev": ["black", "isort", "flake8", "mypy", "pytest-cov"],
    },
    entry_points={
        "console_scripts": [
            "aperture-controller=tasks.controller:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    zip_safe=False,
)
