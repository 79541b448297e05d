from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

requirements = [
    "click>=8.1.0",
    "pyyaml>=6.0",
    "rich>=13.5.0",
    "numpy>=1.24.0",
    "pandas>=1.5.0",
]

test_requirements = [
    "pytest>=7.0.0",
    "pytest-cov>=4.0.0",
]

setup(
    name="adaptive-optimizer",
    version="1.0.0",
    author="Adaptive Optimizer Contributors",
    author_email="",
    description="Adaptive optimization decision engine driven by per-request execution telemetry",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=("tests", "tests.*")),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Monitoring",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": test_requirements,
    },
    entry_points={
        "console_scripts": [
            "adaptive-optimizer=adaptive_optimizer.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
