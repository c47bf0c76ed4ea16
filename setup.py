from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="marksync",
    version="1.0.0",
    author="marksync contributors",
    description="Browser bookmark synchronization across devices and storage backends",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["marksync", "marksync.*"]),
    py_modules=["main"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Topic :: Internet :: WWW/HTTP :: Browsers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "cryptography>=41.0.0",
        "aiofiles>=23.2.1",
        "watchdog>=3.0.0",
        "pyyaml>=6.0.1",
        "httpx>=0.25.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "marksync=main:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
