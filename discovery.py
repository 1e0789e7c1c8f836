# discovery.py
"""
Tag-based discovery of the resources a cleanup run may touch.

Instances and security groups are filtered server-side. S3 cannot filter
buckets by tag, so every bucket in the account is listed and its tag set
fetched one by one (a sequential O(bucket count) scan, fine at lab scale).
Key pairs carry no usable tag and are matched by a substring of their name.
"""
import logging
from typing import List

from botocore.exceptions import BotoCoreError, ClientError

from models import ResourceKind, ResourceRef, TagFilter
from utils import error_code, tags_to_dict

logger = logging.getLogger(__name__)

ACTIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]
UNTAGGED_BUCKET_CODES = {"NoSuchTagSet", "NoSuchTagSetError"}


def _unique(refs):
    seen = set()
    out = []
    for ref in refs:
        if ref not in seen:
            seen.add(ref)
            out.append(ref)
    return out


def find_instances(ec2, tag_filter: TagFilter, region: str) -> List[ResourceRef]:
    filters = [
        tag_filter.as_ec2_filter(),
        {"Name": "instance-state-name", "Values": ACTIVE_INSTANCE_STATES},
    ]
    refs = []
    for page in ec2.get_paginator("describe_instances").paginate(Filters=filters):
        for r in page.get("Reservations", []):
            for i in r.get("Instances", []):
                refs.append(ResourceRef(ResourceKind.INSTANCE, i["InstanceId"], region))
    return _unique(refs)


def find_security_groups(ec2, tag_filter: TagFilter, region: str) -> List[ResourceRef]:
    refs = []
    for page in ec2.get_paginator("describe_security_groups").paginate(Filters=[tag_filter.as_ec2_filter()]):
        for sg in page.get("SecurityGroups", []):
            if sg.get("GroupName") == "default":
                continue
            refs.append(ResourceRef(ResourceKind.SECURITY_GROUP, sg["GroupId"], region))
    return _unique(refs)


def bucket_region(s3, bucket):
    # us-east-1 buckets report a null LocationConstraint, legacy EU ones "EU"
    location = s3.get_bucket_location(Bucket=bucket).get("LocationConstraint")
    if not location:
        return "us-east-1"
    if location == "EU":
        return "eu-west-1"
    return location


def get_bucket_tags(s3, bucket):
    try:
        tagging = s3.get_bucket_tagging(Bucket=bucket)
    except ClientError as e:
        if error_code(e) in UNTAGGED_BUCKET_CODES:
            return {}
        raise
    return tags_to_dict(tagging.get("TagSet", []))


def find_buckets(s3, tag_filter: TagFilter, region: str) -> List[ResourceRef]:
    refs = []
    for b in s3.list_buckets().get("Buckets", []):
        name = b["Name"]
        try:
            if not tag_filter.matches(get_bucket_tags(s3, name)):
                continue
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3: cannot read tags of bucket {name}, skipping ({error_code(e) or e})")
            continue
        try:
            location = bucket_region(s3, name)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3: cannot resolve region of bucket {name}, assuming {region} ({error_code(e) or e})")
            location = region
        refs.append(ResourceRef(ResourceKind.BUCKET, name, location))
    return _unique(refs)


def find_key_pairs(ec2, name_pattern: str, region: str) -> List[ResourceRef]:
    if not name_pattern:
        return []
    refs = [
        ResourceRef(ResourceKind.KEY_PAIR, kp["KeyName"], region)
        for kp in ec2.describe_key_pairs().get("KeyPairs", [])
        if name_pattern in kp["KeyName"]
    ]
    return _unique(refs)
