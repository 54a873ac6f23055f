"""
Common utilities for remote-state-backend.

Modules:
- retry: bounded exponential backoff with jitter for transient failures
- aws: boto3 client construction and botocore error classification
"""

__all__ = [
    "aws",
    "retry",
]
