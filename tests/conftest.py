"""
Shared pytest configuration.

boto3 clients are created at import time by the Lambda module, so a region
must be available before the test modules are collected.
"""

import os

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
