"""
Tests for environment-driven configuration.
"""
from types import SimpleNamespace

import pytest
from botocore.exceptions import ProfileNotFound

import settings as settings_module
from errors import ConfigurationError, PreflightError
from fakes import LAB_ENV_VARS as ENV_VARS
from settings import load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(settings_module.boto3.session, "Session", lambda: SimpleNamespace(region_name=None))


def test_defaults():
    s = load_settings()

    assert s.region == "eu-west-1"
    assert (s.tag_key, s.tag_value) == ("Project", "AutomationLab")
    assert s.dry_run is False
    assert s.key_name_pattern == "automation"
    assert s.purge_max_attempts == 5
    assert s.key_name == "automation-key"
    assert s.tag_filter.as_ec2_filter() == {"Name": "tag:Project", "Values": ["AutomationLab"]}


def test_region_from_session(monkeypatch):
    monkeypatch.setattr(settings_module.boto3.session, "Session", lambda: SimpleNamespace(region_name="us-west-2"))

    assert load_settings().region == "us-west-2"


def test_environment(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("TAG_KEY", "Team")
    monkeypatch.setenv("TAG_VALUE", "Lab2")
    monkeypatch.setenv("DRY_RUN", "yes")
    monkeypatch.setenv("PURGE_MAX_ATTEMPTS", "9")
    monkeypatch.setenv("SG_GRACE_DELAY", "2.5")

    s = load_settings()

    assert s.region == "us-east-1"
    assert str(s.tag_filter) == "Team=Lab2"
    assert s.dry_run is True
    assert s.purge_max_attempts == 9
    assert s.sg_grace_delay == 2.5


@pytest.mark.parametrize("raw", ["0", "false", "no", ""])
def test_dry_run_off(monkeypatch, raw):
    monkeypatch.setenv("DRY_RUN", raw)
    assert load_settings().dry_run is False


def test_invalid_number(monkeypatch):
    monkeypatch.setenv("INSTANCE_WAIT_TIMEOUT", "soon")

    with pytest.raises(ConfigurationError, match="INSTANCE_WAIT_TIMEOUT"):
        load_settings()


def test_unknown_profile_is_a_preflight_error(monkeypatch):
    def broken_session():
        raise ProfileNotFound(profile="does-not-exist")

    monkeypatch.setattr(settings_module.boto3.session, "Session", broken_session)

    with pytest.raises(PreflightError, match="does-not-exist"):
        load_settings()


def test_region_from_environment_skips_profile_lookup(monkeypatch):
    def broken_session():
        raise ProfileNotFound(profile="does-not-exist")

    monkeypatch.setattr(settings_module.boto3.session, "Session", broken_session)
    monkeypatch.setenv("AWS_REGION", "eu-central-1")

    assert load_settings().region == "eu-central-1"


def test_overrides_skip_none(monkeypatch):
    monkeypatch.setenv("TAG_VALUE", "FromEnv")

    s = load_settings(region="ap-south-1", tag_value=None, dry_run=True)

    assert s.region == "ap-south-1"
    assert s.tag_value == "FromEnv"
    assert s.dry_run is True


def test_default_bucket_name(monkeypatch):
    monkeypatch.setattr(settings_module.time, "time", lambda: 1700000000.5)

    assert load_settings().default_bucket_name() == "automation-lab-1700000000"
    assert load_settings(bucket_name="mine").default_bucket_name() == "mine"
