import logging

import boto3

logger = logging.getLogger(__name__)


def iot_client(region: str):
    logger.debug(f"Creating IoT client in {region}")
    return boto3.client("iot", region_name=region)


def s3_client(region: str):
    logger.debug(f"Creating S3 client in {region}")
    return boto3.client("s3", region_name=region)


def get_account_id(region: str) -> str:
    """Look up the AWS account of the credentials in use"""
    identity = boto3.client("sts", region_name=region).get_caller_identity()
    account_id = identity["Account"]
    logger.info(f"Using AWS account {account_id}")
    return account_id
