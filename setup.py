from setuptools import setup, find_packages

setup(
    name="fwci",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "click>=8.0.0",
        "requests>=2.25.0",
        "boto3>=1.26.0",
        "pydantic>=2.0.0",
        "python-dotenv>=0.21.0",
        "filelock>=3.0.0",
        "pyserial>=3.5",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "moto[iot,s3,sts]>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fwci=fwci.cli:main",
        ],
    },
    description="CLI tool for scheduling firmware CI jobs on AWS IoT devices",
    python_requires=">=3.9",
)
