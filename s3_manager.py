# s3_manager.py
import logging
import os
import re

import click
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from cleanup import purge_bucket
from discovery import get_bucket_tags
from errors import ProvisioningError
from utils import build_tags, error_code, log_success, start_command, tag_resource

logger = logging.getLogger(__name__)

BUCKET_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")


def validate_bucket_name(name):
    if not name or not BUCKET_NAME_RE.match(name) or not 3 <= len(name) <= 63:
        raise ProvisioningError(
            f"Invalid bucket name: {name} (3-63 chars, lowercase, numbers, hyphens, dots)")


def _bucket_exists(s3, name):
    try:
        s3.head_bucket(Bucket=name)
        return True
    except ClientError as e:
        if error_code(e) in ("404", "NoSuchBucket", "NotFound"):
            return False
        raise ProvisioningError(f"cannot access bucket {name}: {e}") from e
    except BotoCoreError as e:
        raise ProvisioningError(f"cannot access bucket {name}: {e}") from e


def _remove_bucket(s3, name):
    logger.warning(f"Cleaning up S3 bucket: {name}")
    try:
        purge_bucket(s3, name, max_attempts=2)
        s3.delete_bucket(Bucket=name)
    except ClientError as e:
        logger.error(f"could not remove bucket {name}: {e}")


def create_bucket(s3, settings, name=None, sample_file=None):
    """
    Create (or reuse) a tagged bucket with versioning, AES256 encryption and
    public access blocked, then upload the sample file if it exists.
    """
    name = name or settings.default_bucket_name()
    region = settings.region
    validate_bucket_name(name)
    logger.info(f"Region: {region}, Bucket: {name}")

    created = False
    if _bucket_exists(s3, name):
        logger.warning(f"S3 bucket '{name}' already exists")
    else:
        logger.info(f"Creating S3 bucket: {name}")
        # us-east-1 takes no CreateBucketConfiguration
        kwargs = {"Bucket": name}
        if region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            s3.create_bucket(**kwargs)
        except ClientError as e:
            raise ProvisioningError(f"failed to create bucket {name}: {e}") from e
        created = True
        logger.info(f"Bucket created: {name}")

    try:
        if created:
            tag_resource(s3, name, "s3", build_tags(settings.tag_filter, name))
            logger.info("Bucket tagged successfully")

        s3.put_bucket_versioning(Bucket=name, VersioningConfiguration={"Status": "Enabled"})
        logger.info("Versioning enabled successfully")

        s3.put_bucket_encryption(
            Bucket=name,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
            },
        )
        logger.info("Encryption enabled successfully")

        s3.put_public_access_block(
            Bucket=name,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )
        logger.info("Public access blocked")

        sample_file = sample_file or settings.sample_file
        if sample_file and os.path.isfile(sample_file):
            key = os.path.basename(sample_file)
            logger.info(f"Uploading sample file: {sample_file}")
            s3.upload_file(sample_file, name, key)
            logger.info("Sample file uploaded successfully")
        else:
            logger.warning(f"Sample file not found: {sample_file}")
    except (ClientError, S3UploadFailedError) as e:
        if created:
            _remove_bucket(s3, name)
        raise ProvisioningError(f"failed to configure bucket {name}: {e}") from e

    log_success(logger, f"S3 bucket setup completed: {name}")
    return name


def list_buckets(s3, tag_filter):
    names = []
    for b in s3.list_buckets().get("Buckets", []):
        try:
            if tag_filter.matches(get_bucket_tags(s3, b["Name"])):
                names.append(b["Name"])
        except ClientError:
            continue
    return names


def upload_file(s3, bucket, file_path, tag_filter):
    """Upload into a bucket this tool created; returns the object key."""
    try:
        tags = get_bucket_tags(s3, bucket)
    except ClientError as e:
        raise ProvisioningError(f"cannot read tags of bucket {bucket}: {e}") from e
    if not tag_filter.matches(tags):
        raise ProvisioningError(f"can only upload to buckets tagged {tag_filter}.")
    key = os.path.basename(file_path)
    try:
        s3.upload_file(file_path, bucket, key)
    except (ClientError, S3UploadFailedError) as e:
        raise ProvisioningError(f"error uploading file: {e}") from e
    logger.info(f"file uploaded: {key} -> {bucket}")
    return key


@click.group(name="s3")
def s3_group():
    """Manage Automation Lab S3 buckets"""


@s3_group.command("create-bucket")
@click.option("--name", default=None, help="Bucket name (default: $BUCKET_NAME or automation-lab-<epoch>)")
@click.option("--sample-file", default=None, help="File to upload (default: $SAMPLE_FILE)")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def create_bucket_cmd(name, sample_file, region):
    """Create a versioned, encrypted, private bucket"""
    settings, session, log_file = start_command(region=region)
    s3 = session.client("s3", region_name=settings.region)
    try:
        bucket = create_bucket(s3, settings, name=name, sample_file=sample_file)
    except ProvisioningError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))

    bar = "=" * 60
    click.echo(bar)
    click.echo("S3 Bucket Created Successfully")
    click.echo(bar)
    click.echo(f"Bucket Name       : {bucket}")
    click.echo(f"Region            : {settings.region}")
    click.echo("Versioning        : Enabled")
    click.echo("Encryption        : AES256")
    click.echo("Public Access     : Blocked")
    click.echo(f"Log File          : {log_file or 'console only'}")
    click.echo(bar)


@s3_group.command("list")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def list_buckets_cmd(region):
    """List tagged buckets"""
    settings, session, _ = start_command(region=region)
    s3 = session.client("s3", region_name=settings.region)
    try:
        names = list_buckets(s3, settings.tag_filter)
    except ClientError as e:
        raise click.ClickException(f"error listing buckets: {e}")
    if not names:
        click.echo(f"No buckets tagged {settings.tag_filter}.")
    for name in names:
        click.echo(name)


@s3_group.command("upload-file")
@click.option("--bucket", required=True)
@click.option("--file", "file_", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def upload_file_cmd(bucket, file_, region):
    """Upload a file to a tagged bucket"""
    settings, session, _ = start_command(region=region)
    s3 = session.client("s3", region_name=settings.region)
    try:
        key = upload_file(s3, bucket, file_, settings.tag_filter)
    except ProvisioningError as e:
        raise click.ClickException(str(e))
    click.echo(f"file uploaded: {key} -> {bucket}")
