"""
Tests for tag-based resource discovery.
"""
from botocore.exceptions import EndpointConnectionError

from discovery import find_buckets, find_instances, find_key_pairs, find_security_groups
from models import ResourceKind, ResourceRef, TagFilter

LAB = TagFilter("Project", "AutomationLab")


def test_instances_skip_terminated_and_foreign(lab_session):
    ec2 = lab_session.ec2
    ec2.add_instance("i-0stopped", {"Project": "AutomationLab"}, state="stopped")

    refs = find_instances(ec2, LAB, "eu-west-1")

    assert [r.identifier for r in refs] == ["i-0lab", "i-0stopped"]
    assert all(r.kind == ResourceKind.INSTANCE for r in refs)
    state_filter = ec2.called("describe_instances")[0]["Filters"][1]
    assert state_filter == {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]}


def test_security_groups_never_include_default(lab_session):
    refs = find_security_groups(lab_session.ec2, LAB, "eu-west-1")

    assert refs == [ResourceRef(ResourceKind.SECURITY_GROUP, "sg-0lab", "eu-west-1")]


def test_buckets_scanned_client_side(lab_session):
    refs = find_buckets(lab_session.s3, LAB, "eu-west-1")

    assert refs == [ResourceRef(ResourceKind.BUCKET, "automation-lab-1700000000", "eu-west-1")]
    tag_reads = [c["Bucket"] for c in lab_session.s3.called("get_bucket_tagging")]
    assert tag_reads == ["automation-lab-1700000000", "other-bucket", "untagged-bucket"]


def test_bucket_region_from_location(session):
    session.s3.add_bucket("virginia", tags={"Project": "AutomationLab"}, region="us-east-1")

    assert find_buckets(session.s3, LAB, "eu-west-1")[0].region == "us-east-1"


def test_unreadable_bucket_tags_are_skipped(session, caplog):
    session.s3.add_bucket("locked-down", tags={"Project": "AutomationLab"})
    session.s3.fail_on["get_bucket_tagging"] = "AccessDenied"

    assert find_buckets(session.s3, LAB, "eu-west-1") == []
    assert "cannot read tags of bucket locked-down" in caplog.text


def test_unreachable_bucket_does_not_stop_scan(session, caplog):
    s3 = session.s3
    s3.add_bucket("automation-lab-far", tags={"Project": "AutomationLab"})
    s3.add_bucket("automation-lab-near", tags={"Project": "AutomationLab"})
    read_tags = s3.get_bucket_tagging

    def get_bucket_tagging(Bucket):
        if Bucket == "automation-lab-far":
            raise EndpointConnectionError(endpoint_url="https://automation-lab-far.s3.amazonaws.com")
        return read_tags(Bucket=Bucket)

    s3.get_bucket_tagging = get_bucket_tagging

    assert [r.identifier for r in find_buckets(s3, LAB, "eu-west-1")] == ["automation-lab-near"]
    assert "cannot read tags of bucket automation-lab-far" in caplog.text


def test_unreachable_location_assumes_run_region(session):
    session.s3.add_bucket("automation-lab-1", tags={"Project": "AutomationLab"}, region="us-east-1")
    session.s3.fail_on["get_bucket_location"] = EndpointConnectionError(endpoint_url="https://s3.amazonaws.com")

    assert find_buckets(session.s3, LAB, "eu-west-1")[0].region == "eu-west-1"


def test_key_pairs_by_name_substring(lab_session):
    lab_session.ec2.add_key_pair("Automation-upper")

    refs = find_key_pairs(lab_session.ec2, "automation", "eu-west-1")

    assert [r.identifier for r in refs] == ["automation-key"]


def test_key_pairs_without_pattern(lab_session):
    assert find_key_pairs(lab_session.ec2, "", "eu-west-1") == []


def test_empty_account(session):
    assert find_instances(session.ec2, LAB, "eu-west-1") == []
    assert find_security_groups(session.ec2, LAB, "eu-west-1") == []
    assert find_buckets(session.s3, LAB, "eu-west-1") == []
    assert find_key_pairs(session.ec2, "automation", "eu-west-1") == []
