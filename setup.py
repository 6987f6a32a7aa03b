"""
Setup script for Accounting Sync Orchestrator

Batch migration and sync orchestration for moving committed business records
into an external accounting system in controlled, resumable batches.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Accounting Sync Orchestrator

    Batch migration and sync orchestration with pre-flight validation, retries,
    pause/resume/cancel, progress tracking and named task queues.
    """

setup(
    name="accounting-sync-orchestrator",
    version="1.0.0",
    description="Batch migration and sync orchestration for accounting integrations",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Accounting Sync Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Office/Business :: Financial :: Accounting",
    ],
    keywords="migration, sync, batch processing, accounting, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Additional async and networking
        "aiofiles>=23.1.0",
        "httpx>=0.24.0",
        "asyncio-throttle>=1.0.2",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "accounting-sync-orchestrator=accounting_sync_orchestrator.cli.main:main",
            "aso=accounting_sync_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "accounting_sync_orchestrator": [
            "sql/*.sql",
        ],
    },
)
