"""DynamoDB storage backend.

This package centralizes:
- boto3 resource configuration
- retry/backoff policy and botocore error mapping
- continuation token encoding/decoding
- the blocking table wrapper and its async StorageBackend adapter

"""

from .backend import DynamoBackend
from .table import DynamoTable

__all__ = ["DynamoBackend", "DynamoTable"]
