# utils.py
import logging
import os
import sys
from datetime import datetime, timezone

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError

from errors import ConfigurationError, PreflightError
from settings import load_settings

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_CONSOLE_HANDLER = "automation-lab-console"
_FILE_HANDLER = "automation-lab-file"

logger = logging.getLogger(__name__)


def log_success(log, msg, *args):
    log.log(SUCCESS, msg, *args)


def setup_logging(log_file=None, level=logging.INFO):
    """
    Log to stderr and, when possible, to log_file.
    Returns the log file path in use, or None when running console-only.
    """
    logging.addLevelName(logging.WARNING, "WARN")
    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        if h.get_name() in (_CONSOLE_HANDLER, _FILE_HANDLER):
            root.removeHandler(h)
            h.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    console = logging.StreamHandler(sys.stderr)
    console.set_name(_CONSOLE_HANDLER)
    console.setFormatter(formatter)
    root.addHandler(console)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    if not log_file:
        return None
    try:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        logger.warning(f"cannot open log file {log_file} ({e}); logging to console only")
        return None
    file_handler.set_name(_FILE_HANDLER)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def get_session(region):
    try:
        return boto3.session.Session(region_name=region)
    except BotoCoreError as e:
        raise PreflightError(f"AWS credentials not configured or invalid for region {region}: {e}") from e


def verify_identity(session, region=None):
    """Fail fast unless the caller can be identified (sts get-caller-identity)."""
    region = region or session.region_name
    try:
        identity = session.client("sts", region_name=region).get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise PreflightError(f"AWS credentials not configured or invalid for region {region}: {e}") from e
    logger.info(f"authenticated as {identity.get('Arn', 'unknown')} (account {identity.get('Account', '?')})")
    return identity


def error_code(exc):
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def tags_to_dict(tags):
    return {t["Key"]: t["Value"] for t in tags or []}


def build_tags(tag_filter, name=None):
    """Tag set stamped on everything this tool creates."""
    tags = []
    if name:
        tags.append({"Key": "Name", "Value": name})
    tags.append({"Key": tag_filter.key, "Value": tag_filter.value})
    tags.append({"Key": "CreatedDate", "Value": datetime.now(timezone.utc).strftime("%Y-%m-%d")})
    return tags


def tag_resource(client, resource_id, resource_type, tags):
    """
    Adds tags to an AWS resource.

    Supported resource types: 'ec2' (instances, security groups), 's3'
    """
    if resource_type == "ec2":
        client.create_tags(Resources=[resource_id], Tags=tags)
    elif resource_type == "s3":
        client.put_bucket_tagging(Bucket=resource_id, Tagging={"TagSet": tags})
    else:
        raise ValueError(f"Unsupported resource type: {resource_type}")


def start_command(**overrides):
    """Common prologue of every CLI command: settings, logging, checked session."""
    try:
        settings = load_settings(**overrides)
    except (ConfigurationError, PreflightError) as e:
        raise click.ClickException(str(e))
    log_file = setup_logging(settings.log_file)
    try:
        session = get_session(settings.region)
        verify_identity(session, settings.region)
    except PreflightError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))
    return settings, session, log_file
