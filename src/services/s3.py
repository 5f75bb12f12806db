"""
S3 object utilities.

This module provides reusable functions for reading and writing the JSON
state objects and text templates kept in Amazon S3.
"""

import json
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Configure S3 client with timeouts to prevent infinite hangs
s3_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=10,
    read_timeout=60
)

# Initialize S3 client at module level (reused across invocations)
s3_client = boto3.client('s3', config=s3_config)
logger.info("S3 client initialized with timeouts: connect=10s, read=60s, max_attempts=1")


def _validate_location(bucket: str, key: str) -> None:
    if not bucket:
        raise ValueError("S3 bucket name cannot be empty")
    if not key:
        raise ValueError("S3 object key cannot be empty")


def get_object_bytes(bucket: str, key: str) -> bytes:
    """
    Fetch raw object content from S3.

    Args:
        bucket: S3 bucket name
        key: S3 object key

    Returns:
        bytes: The object content

    Raises:
        KeyError: If the object does not exist
        ValueError: If the bucket does not exist or bucket/key is empty
        ClientError: For other S3 errors
    """
    _validate_location(bucket, key)
    try:
        response = s3_client.get_object(Bucket=bucket, Key=key)
        return response['Body'].read()
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', '')
        if error_code == 'NoSuchKey':
            raise KeyError(key)
        elif error_code == 'NoSuchBucket':
            logger.error(f"S3 bucket not found: {bucket}")
            raise ValueError(f"S3 bucket not found: {bucket}")
        else:
            logger.error(f"Failed to fetch from S3 s3://{bucket}/{key}: {e}")
            raise


def get_text(bucket: str, key: str) -> str:
    """Fetch an object and decode it as UTF-8 text."""
    return get_object_bytes(bucket, key).decode('utf-8')


def get_json(bucket: str, key: str) -> Optional[Any]:
    """
    Fetch and decode a JSON object.

    Returns:
        The decoded value, or None if the object does not exist

    Raises:
        ValueError: If the object is not valid JSON or the bucket is missing
        ClientError: For other S3 errors

    Example:
        >>> get_json("state-bucket", "state/hierarchy/acme.json")
        {'departments': {...}, 'relationships': [...]}
    """
    try:
        body = get_object_bytes(bucket, key)
    except KeyError:
        logger.info(f"S3 object not found, treating as empty: s3://{bucket}/{key}")
        return None

    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in s3://{bucket}/{key}: {e}")
        raise ValueError(f"Invalid JSON in S3 object: {key}")


def put_json(bucket: str, key: str, value: Any) -> None:
    """
    Serialize a value as JSON and upload it.

    Raises:
        ValueError: If parameters are invalid
        ClientError: If the S3 operation fails
    """
    _validate_location(bucket, key)
    if value is None:
        raise ValueError("Value cannot be None")

    content = json.dumps(value, default=str)

    try:
        logger.info(f"Uploading JSON to S3: bucket={bucket}, key={key}, size={len(content)} bytes")

        s3_client.put_object(
            Bucket=bucket,
            Key=key,
            Body=content.encode('utf-8'),
            ContentType='application/json'
        )

    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        error_message = e.response.get('Error', {}).get('Message', str(e))

        logger.error(
            f"Failed to upload JSON to S3: "
            f"bucket={bucket}, key={key}, "
            f"error_code={error_code}, error_message={error_message}"
        )

        raise
