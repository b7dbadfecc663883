"""
taskdash setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="taskdash",
    version="1.0.0",
    description="taskdash — Role-scoped task aggregation engine for the task-tracking dashboard",
    packages=find_packages(include=["taskdash", "taskdash.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "taskdash=taskdash.cli:main",
        ],
    },
    install_requires=[
        "pydantic>=2.5",
        "redis>=5.0",
        "pyyaml>=6.0",
        "tzdata>=2024.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
