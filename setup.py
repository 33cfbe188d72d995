"""
CaseVault setup.py: package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="casevault",
    version="1.0.0",
    description="CaseVault - document backup, versioning and evidence integrity for case management",
    packages=find_packages(include=["casevault", "casevault.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "casevault=casevault.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "pydantic>=2.5",
        "celery>=5.3",
        "cryptography>=42.0",
        "pyyaml>=6.0",
        "httpx>=0.27",
        "Pillow>=10.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
