# settings.py
import os
import time
from dataclasses import dataclass, replace
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError

from errors import ConfigurationError, PreflightError
from models import TagFilter

DEFAULT_REGION = "eu-west-1"
DEFAULT_TAG_KEY = "Project"
DEFAULT_TAG_VALUE = "AutomationLab"
DEFAULT_KEY_NAME = "automation-key"
DEFAULT_KEY_PATTERN = "automation"
DEFAULT_LOG_FILE = os.path.join("logs", "automation.log")
DEFAULT_KEYS_DIR = "keys"
DEFAULT_SAMPLE_FILE = os.path.join("assets", "welcome.txt")

_TRUE = {"1", "true", "yes", "on"}


def _env_flag(name, default=False):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def _env_number(name, default, cast=int):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


def _default_region():
    region = os.getenv("AWS_REGION")
    if region:
        return region
    try:
        region = boto3.session.Session().region_name
    except BotoCoreError as e:
        # e.g. AWS_PROFILE names a profile missing from ~/.aws/config
        raise PreflightError(f"AWS credentials not configured or invalid: {e}") from e
    return region or DEFAULT_REGION


@dataclass(frozen=True)
class Settings:
    region: str
    tag_key: str = DEFAULT_TAG_KEY
    tag_value: str = DEFAULT_TAG_VALUE
    dry_run: bool = False
    key_name_pattern: str = DEFAULT_KEY_PATTERN
    log_file: str = DEFAULT_LOG_FILE
    keys_dir: str = DEFAULT_KEYS_DIR

    # reclaimer timing
    instance_wait_timeout: int = 600
    instance_wait_delay: int = 15
    eni_wait_timeout: int = 120
    eni_poll_interval: int = 5
    sg_grace_delay: float = 15
    purge_max_attempts: int = 5

    # provisioning
    ami: str = "amazon-linux"
    instance_type: str = "t3.micro"
    key_name: str = DEFAULT_KEY_NAME
    sg_name: str = "devops-sg"
    sg_description: str = "Security group for Automation Lab"
    bucket_name: Optional[str] = None
    sample_file: str = DEFAULT_SAMPLE_FILE

    @property
    def tag_filter(self) -> TagFilter:
        return TagFilter(self.tag_key, self.tag_value)

    def default_bucket_name(self) -> str:
        return self.bucket_name or f"automation-lab-{int(time.time())}"


def load_settings(**overrides) -> Settings:
    """
    Build Settings from the environment. Keyword overrides whose value is
    None are ignored so CLI options can be passed straight through.
    """
    settings = Settings(
        region=_default_region(),
        tag_key=os.getenv("TAG_KEY") or DEFAULT_TAG_KEY,
        tag_value=os.getenv("TAG_VALUE") or DEFAULT_TAG_VALUE,
        dry_run=_env_flag("DRY_RUN"),
        key_name_pattern=os.getenv("KEY_NAME_PATTERN") or DEFAULT_KEY_PATTERN,
        log_file=os.getenv("LOG_FILE") or DEFAULT_LOG_FILE,
        keys_dir=os.getenv("KEYS_DIR") or DEFAULT_KEYS_DIR,
        instance_wait_timeout=_env_number("INSTANCE_WAIT_TIMEOUT", 600),
        eni_wait_timeout=_env_number("ENI_WAIT_TIMEOUT", 120),
        sg_grace_delay=_env_number("SG_GRACE_DELAY", 15, float),
        purge_max_attempts=_env_number("PURGE_MAX_ATTEMPTS", 5),
        ami=os.getenv("AMI_ID") or "amazon-linux",
        instance_type=os.getenv("INSTANCE_TYPE") or "t3.micro",
        key_name=os.getenv("KEY_NAME") or DEFAULT_KEY_NAME,
        sg_name=os.getenv("SG_NAME") or "devops-sg",
        bucket_name=os.getenv("BUCKET_NAME") or None,
        sample_file=os.getenv("SAMPLE_FILE") or DEFAULT_SAMPLE_FILE,
    )
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(settings, **overrides) if overrides else settings
