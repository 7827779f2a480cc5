# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""procshell - external programs as awaitable Python values"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="procshell",
    version="0.1.0",
    author="Ilya Makarov",
    author_email="",
    description="Programmatic shell: invoke, pipe and capture external programs from asyncio",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*"]),
    py_modules=["cli"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: Other/Proprietary License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Framework :: AsyncIO",
        "Topic :: System :: Shells",
        "Topic :: Utilities",
    ],
    python_requires=">=3.10",
    install_requires=[
        # Core - Required
        "click>=8.1.7",
        "pyyaml>=6.0.1",
        "pydantic>=2.5.2",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
            "pytest-cov>=4.1.0",
            "black>=23.12.1",
            "ruff>=0.1.6",
            "mypy>=1.7.1",
        ],
    },
    entry_points={
        "console_scripts": [
            "procshell=cli:cli",
        ],
    },
    include_package_data=True,
    zip_safe=False,
    keywords=[
        "shell",
        "subprocess",
        "pipeline",
        "asyncio",
        "process",
    ],
)
