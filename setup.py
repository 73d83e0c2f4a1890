from setuptools import setup, find_packages

setup(
    name="jobctl",
    version="0.2.0",
    description="Background job queue and worker engine with database, Redis, sync and null backends",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.1.0",
        "redis>=4.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "jobctl=jobctl.cli:main",
        ],
    },
    python_requires=">=3.8",
)
