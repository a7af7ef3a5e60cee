"""
Setup configuration for the EventBridge / ECS Fan-out CDK Python application.

This setup.py file defines the package metadata and dependencies for the
AWS CDK application that routes queue messages to one of two ECS tasks
through a Step Functions workflow.
"""

from setuptools import setup, find_packages

# Read requirements from requirements.txt
with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="eventbridge-ecs-fanout-cdk",
    version="1.0.0",

    # Package metadata
    description="CDK Python application fanning SQS messages out to ECS tasks via Step Functions",
    long_description=(
        "SQS queue, dead-letter queue, ECS Fargate task, Step Functions "
        "conditional dispatch and EventBridge rule / Lambda / Pipes transports."
    ),

    # Package discovery
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["app"],

    # Include non-Python files
    include_package_data=True,

    # Dependencies
    install_requires=requirements,

    # Python version requirement
    python_requires=">=3.8",

    # Package classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
    ],

    keywords="aws cdk python sqs ecs fargate stepfunctions eventbridge pipes lambda",

    # Entry points for command line scripts
    entry_points={
        "console_scripts": [
            "fanout-synth=app:main",
            "fanout-notifier=notifier.main:main",
        ],
    },

    # Development dependencies
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
        ],
    },

    # Zip safe flag
    zip_safe=False,
)
