import logging

import pytest

import cleanup
from fakes import FakeSession
from settings import Settings

LAB_TAGS = {"Project": "AutomationLab", "Name": "automation-key-instance"}


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Record sleeps instead of waiting."""
    calls = []
    monkeypatch.setattr(cleanup.time, "sleep", lambda seconds: calls.append(seconds))
    return calls


@pytest.fixture
def settings(tmp_path):
    return Settings(
        region="eu-west-1",
        log_file=str(tmp_path / "logs" / "automation.log"),
        keys_dir=str(tmp_path / "keys"),
        instance_wait_timeout=30,
        instance_wait_delay=5,
        eni_wait_timeout=20,
        eni_poll_interval=5,
        sg_grace_delay=3,
        purge_max_attempts=3,
        sample_file=str(tmp_path / "assets" / "welcome.txt"),
    )


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def lab_session(session):
    """
    The Automation Lab footprint: one running instance inside one security
    group, one versioned bucket holding versions and delete markers, one key
    pair, next to resources that must never be touched.
    """
    ec2, s3 = session.ec2, session.s3
    ec2.add_security_group("sg-0lab", "devops-sg", {"Project": "AutomationLab"})
    ec2.add_instance("i-0lab", LAB_TAGS, groups=["sg-0lab"])
    ec2.add_key_pair("automation-key")
    s3.add_bucket("automation-lab-1700000000", tags={"Project": "AutomationLab"}, versions=3, markers=2)

    ec2.add_security_group("sg-default", "default", {"Project": "AutomationLab"})
    ec2.add_security_group("sg-0other", "web", {"Project": "Other"})
    ec2.add_instance("i-0other", {"Project": "Other"}, groups=["sg-0other"])
    ec2.add_instance("i-0gone", {"Project": "AutomationLab"}, state="terminated")
    ec2.add_key_pair("prod-key")
    s3.add_bucket("other-bucket", tags={"Project": "Other"}, versions=1)
    s3.add_bucket("untagged-bucket")
    return session


@pytest.fixture
def reset_logging():
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        if h.get_name() and h.get_name().startswith("automation-lab"):
            root.removeHandler(h)
            h.close()
