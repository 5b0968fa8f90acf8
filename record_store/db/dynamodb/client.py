from __future__ import annotations

from functools import lru_cache

import boto3
from botocore.config import Config

from ...settings import StoreSettings


@lru_cache(maxsize=8)
def botocore_config(*, connect_timeout: float = 2, read_timeout: float = 10) -> Config:
    # Keep botocore retries enabled (adaptive is best-effort); we still do an app-layer
    # retry for a narrow set of known-safe transient failures.
    return Config(
        retries={"max_attempts": 10, "mode": "adaptive"},
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
    )


@lru_cache(maxsize=8)
def dynamodb_resource(
    *,
    region_name: str,
    endpoint_url: str | None = None,
    connect_timeout: float = 2,
    read_timeout: float = 10,
):
    return boto3.resource(
        "dynamodb",
        region_name=region_name,
        endpoint_url=endpoint_url,
        config=botocore_config(connect_timeout=connect_timeout, read_timeout=read_timeout),
    )


def table_resource(table_name: str, settings: StoreSettings):
    return dynamodb_resource(
        region_name=settings.aws_region,
        endpoint_url=settings.dynamodb_endpoint_url,
        connect_timeout=settings.ddb_connect_timeout,
        read_timeout=settings.ddb_read_timeout,
    ).Table(table_name)
