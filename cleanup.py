# cleanup.py
"""
Tagged-resource reclaimer.

Finds everything carrying the configured tag in a region and removes it in
dependency order: instances, security groups, buckets, key pairs. A failure
on one resource never stops the run; it is counted as a warning and turned
into a manual action for the operator.
"""
import logging
import os
import time

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from discovery import find_buckets, find_instances, find_key_pairs, find_security_groups
from models import OutcomeStatus, ResourceKind, RunSummary
from utils import error_code, get_session, log_success, verify_identity

logger = logging.getLogger(__name__)

AWS_ERRORS = (ClientError, BotoCoreError)
S3_DELETE_BATCH = 1000

# answers from the S3 configuration deletes meaning "there was nothing to remove"
_S3_ABSENT_CODES = {
    "NoSuchPublicAccessBlockConfiguration",
    "NoSuchBucketPolicy",
    "NoSuchLifecycleConfiguration",
    "ReplicationConfigurationNotFoundError",
    "ServerSideEncryptionConfigurationNotFoundError",
}
_S3_CONFIG_DELETES = [
    ("public access block", "delete_public_access_block"),
    ("bucket policy", "delete_bucket_policy"),
    ("lifecycle rules", "delete_bucket_lifecycle"),
    ("replication configuration", "delete_bucket_replication"),
    ("encryption configuration", "delete_bucket_encryption"),
]


def cleanup_resources(settings, session=None) -> RunSummary:
    """
    Run the full teardown for settings.region / settings.tag_filter.

    Raises PreflightError when the caller cannot be identified; nothing else
    escapes, per-resource problems end up in the returned RunSummary.
    """
    session = session or get_session(settings.region)
    tag_filter = settings.tag_filter
    mode = "DRY RUN" if settings.dry_run else "LIVE"
    logger.info(f"=== cleanup {tag_filter} in {settings.region} ({mode}) ===")
    verify_identity(session, settings.region)

    summary = RunSummary(tag_filter=tag_filter, region=settings.region, dry_run=settings.dry_run)
    ec2 = session.client("ec2", region_name=settings.region)
    s3 = session.client("s3", region_name=settings.region)

    cleanup_instances(ec2, settings, summary)
    cleanup_security_groups(ec2, settings, summary)
    cleanup_buckets(session, s3, settings, summary)
    cleanup_key_pairs(ec2, settings, summary)

    logger.info(
        f"=== done: {summary.deleted} deleted, {summary.skipped} skipped, "
        f"{summary.failed} failed, {summary.warned} warnings ==="
    )
    return summary


def _discover(label, what, summary, finder, *args):
    try:
        refs = finder(*args)
    except AWS_ERRORS as e:
        logger.error(f"{label}: discovery failed: {e}")
        summary.require_action(
            f"{label}: could not list resources {what} in {summary.region} "
            f"({error_code(e) or e}); check for leftovers manually."
        )
        return []
    if not refs:
        logger.info(f"{label}: nothing {what} found, skipping.")
    return [r for r in refs if not summary.processed(r)]


# ---------- EC2 ----------
def cleanup_instances(ec2, settings, summary):
    refs = _discover("EC2", f"tagged {settings.tag_filter}", summary,
                     find_instances, ec2, settings.tag_filter, settings.region)
    terminating = []
    for ref in refs:
        if settings.dry_run:
            logger.info(f"[DRY RUN] EC2: would terminate {ref.identifier}")
            summary.record(ref, OutcomeStatus.SKIPPED)
            continue
        try:
            ec2.terminate_instances(InstanceIds=[ref.identifier])
        except AWS_ERRORS as e:
            logger.error(f"EC2: failed to terminate {ref.identifier}: {e}")
            summary.fail(
                ref, str(e),
                f"Terminate EC2 instance {ref.identifier} in {ref.region} manually "
                f"({error_code(e) or 'error'}); check termination protection.",
            )
            continue
        logger.info(f"EC2: terminating {ref.identifier}")
        summary.record(ref, OutcomeStatus.DELETED)
        terminating.append(ref.identifier)

    if terminating:
        wait_for_termination(ec2, terminating, settings, summary)


def wait_for_termination(ec2, instance_ids, settings, summary) -> bool:
    """Block until the instances are terminated. A timeout is only a warning."""
    delay = max(1, settings.instance_wait_delay)
    attempts = max(1, settings.instance_wait_timeout // delay)
    logger.info(f"EC2: waiting up to {settings.instance_wait_timeout}s for termination of {', '.join(instance_ids)}")
    try:
        ec2.get_waiter("instance_terminated").wait(
            InstanceIds=instance_ids,
            WaiterConfig={"Delay": delay, "MaxAttempts": attempts},
        )
    except WaiterError as e:
        summary.warn()
        logger.warning(f"EC2: instances not terminated after {settings.instance_wait_timeout}s ({e}); continuing")
        return False
    except AWS_ERRORS as e:
        summary.warn()
        logger.warning(f"EC2: could not confirm termination ({e}); continuing")
        return False
    log_success(logger, f"EC2: terminated {', '.join(instance_ids)}")
    return True


# ---------- Security groups ----------
def cleanup_security_groups(ec2, settings, summary):
    refs = _discover("SG", f"tagged {settings.tag_filter}", summary,
                     find_security_groups, ec2, settings.tag_filter, settings.region)
    if not refs:
        return
    if not settings.dry_run:
        wait_for_network_interfaces(ec2, [r.identifier for r in refs], settings, summary)

    for ref in refs:
        if settings.dry_run:
            logger.info(f"[DRY RUN] SG: would delete {ref.identifier}")
            summary.record(ref, OutcomeStatus.SKIPPED)
            continue
        try:
            ec2.delete_security_group(GroupId=ref.identifier)
        except AWS_ERRORS as e:
            code = error_code(e)
            logger.error(f"SG: failed to delete {ref.identifier}: {e}")
            if code == "DependencyViolation":
                action = (f"Security group {ref.identifier} in {ref.region} is still in use (DependencyViolation); "
                          f"detach the remaining network interfaces or referencing rules, then delete it manually.")
            else:
                action = f"Delete security group {ref.identifier} in {ref.region} manually ({code or e})."
            summary.fail(ref, str(e), action)
            continue
        log_success(logger, f"SG: deleted {ref.identifier}")
        summary.record(ref, OutcomeStatus.DELETED)


def wait_for_network_interfaces(ec2, group_ids, settings, summary=None) -> bool:
    """
    Poll until no network interface references group_ids.
    Falls back to a fixed grace delay when interfaces cannot be queried.
    """
    interval = max(1, settings.eni_poll_interval)
    attempts = max(1, settings.eni_wait_timeout // interval)
    filters = [{"Name": "group-id", "Values": list(group_ids)}]
    for attempt in range(attempts):
        try:
            resp = ec2.describe_network_interfaces(Filters=filters)
        except AWS_ERRORS as e:
            logger.info(f"SG: cannot query network interfaces ({error_code(e) or e}); "
                        f"waiting {settings.sg_grace_delay}s instead")
            time.sleep(settings.sg_grace_delay)
            return False
        attached = [n["NetworkInterfaceId"] for n in resp.get("NetworkInterfaces", [])]
        if not attached:
            return True
        logger.info(f"SG: {len(attached)} network interface(s) still attached: {', '.join(attached)}")
        if attempt < attempts - 1:
            time.sleep(interval)

    if summary is not None:
        summary.warn()
    logger.warning(f"SG: network interfaces still attached after {settings.eni_wait_timeout}s; deleting anyway")
    return False


# ---------- S3 ----------
def cleanup_buckets(session, s3, settings, summary):
    refs = _discover("S3", f"tagged {settings.tag_filter}", summary,
                     find_buckets, s3, settings.tag_filter, settings.region)
    for ref in refs:
        if ref.region == settings.region:
            client = s3
        else:
            client = session.client("s3", region_name=ref.region)
        reclaim_bucket(client, ref, settings, summary)


def reclaim_bucket(s3, ref, settings, summary):
    """
    Make a bucket deletable despite versioning, retention and attached
    configuration, then delete it. Never raises.
    """
    try:
        _reclaim_bucket(s3, ref, settings, summary)
    except AWS_ERRORS as e:
        logger.error(f"S3: unexpected error reclaiming {ref.identifier}: {e}")
        if not summary.processed(ref):
            summary.fail(ref, str(e), f"Inspect bucket {ref.identifier} ({ref.region}) and delete it manually ({error_code(e) or e}).")


def _reclaim_bucket(s3, ref, settings, summary):
    bucket = ref.identifier
    if object_lock_enabled(s3, bucket):
        logger.warning(f"S3: bucket {bucket} has Object Lock enabled; retained versions cannot be force-deleted")
        if settings.dry_run:
            summary.record(ref, OutcomeStatus.SKIPPED, "object lock enabled")
            return
        summary.fail(
            ref, "object lock enabled",
            f"Bucket {bucket} ({ref.region}) has Object Lock enabled: wait for retention to expire "
            f"or remove legal holds, then empty and delete it manually.",
        )
        return

    if settings.dry_run:
        logger.info(f"[DRY RUN] S3: would empty and delete bucket {bucket}")
        summary.record(ref, OutcomeStatus.SKIPPED)
        return

    suspend_versioning(s3, bucket)
    strip_bucket_configuration(s3, bucket)
    if not purge_bucket(s3, bucket, settings.purge_max_attempts):
        logger.warning(f"S3: bucket {bucket} still not empty after {settings.purge_max_attempts} purge rounds")
        summary.fail(
            ref, "purge did not converge",
            f"Bucket {bucket} ({ref.region}) still holds object versions after "
            f"{settings.purge_max_attempts} purge rounds; empty it and delete it manually.",
        )
        return

    try:
        s3.delete_bucket(Bucket=bucket)
    except AWS_ERRORS as e:
        logger.error(f"S3: failed to delete bucket {bucket}: {e}")
        summary.fail(
            ref, str(e),
            f"Bucket {bucket} ({ref.region}) could not be deleted ({error_code(e) or e}); "
            f"it may still hold retained objects, inspect it and delete it manually.",
        )
        return
    log_success(logger, f"S3: deleted bucket {bucket}")
    summary.record(ref, OutcomeStatus.DELETED)


def object_lock_enabled(s3, bucket) -> bool:
    try:
        conf = s3.get_object_lock_configuration(Bucket=bucket)
    except AWS_ERRORS as e:
        if error_code(e) != "ObjectLockConfigurationNotFoundError":
            logger.warning(f"S3: cannot read object lock configuration of {bucket} ({error_code(e) or e})")
        return False
    return conf.get("ObjectLockConfiguration", {}).get("ObjectLockEnabled") == "Enabled"


def suspend_versioning(s3, bucket):
    try:
        if s3.get_bucket_versioning(Bucket=bucket).get("Status") != "Enabled":
            return
        s3.put_bucket_versioning(Bucket=bucket, VersioningConfiguration={"Status": "Suspended"})
        logger.info(f"S3: versioning suspended on {bucket}")
    except AWS_ERRORS as e:
        logger.warning(f"S3: could not suspend versioning on {bucket} ({error_code(e) or e})")


def strip_bucket_configuration(s3, bucket):
    """Drop the configuration that can block emptying or deleting a bucket."""
    for label, method in _S3_CONFIG_DELETES:
        try:
            getattr(s3, method)(Bucket=bucket)
        except AWS_ERRORS as e:
            if error_code(e) not in _S3_ABSENT_CODES:
                logger.warning(f"S3: could not remove {label} from {bucket} ({error_code(e) or e})")
            continue
        logger.debug(f"S3: removed {label} from {bucket}")


def list_versions(s3, bucket):
    """All object versions and delete markers as delete_objects identifiers."""
    entries = []
    for page in s3.get_paginator("list_object_versions").paginate(Bucket=bucket):
        for v in (page.get("Versions") or []) + (page.get("DeleteMarkers") or []):
            entries.append({"Key": v["Key"], "VersionId": v["VersionId"]})
    return entries


def purge_bucket(s3, bucket, max_attempts=5) -> bool:
    """
    Delete every version and delete marker, re-listing after each round.
    Returns True once a fresh listing is empty, False after max_attempts rounds.
    """
    for attempt in range(1, max(1, max_attempts) + 1):
        try:
            entries = list_versions(s3, bucket)
        except AWS_ERRORS as e:
            logger.warning(f"S3: listing versions of {bucket} failed ({error_code(e) or e})")
            continue
        if not entries:
            return True
        logger.info(f"S3: purge round {attempt}: deleting {len(entries)} version(s)/delete marker(s) from {bucket}")
        for i in range(0, len(entries), S3_DELETE_BATCH):
            batch = entries[i:i + S3_DELETE_BATCH]
            try:
                resp = s3.delete_objects(Bucket=bucket, Delete={"Objects": batch, "Quiet": True})
            except AWS_ERRORS as e:
                logger.warning(f"S3: batch delete in {bucket} failed ({error_code(e) or e})")
                continue
            for err in resp.get("Errors", []):
                logger.warning(f"S3: could not delete {err.get('Key')} version {err.get('VersionId')} "
                               f"({err.get('Code')})")

    try:
        return not list_versions(s3, bucket)
    except AWS_ERRORS:
        return False


# ---------- Key pairs ----------
def cleanup_key_pairs(ec2, settings, summary):
    # key pairs are matched by name, not by tag
    refs = _discover("KeyPair", f"named *{settings.key_name_pattern}*", summary,
                     find_key_pairs, ec2, settings.key_name_pattern, settings.region)
    for ref in refs:
        if settings.dry_run:
            logger.info(f"[DRY RUN] KeyPair: would delete {ref.identifier}")
            summary.record(ref, OutcomeStatus.SKIPPED)
            continue
        try:
            ec2.delete_key_pair(KeyName=ref.identifier)
        except AWS_ERRORS as e:
            logger.error(f"KeyPair: failed to delete {ref.identifier}: {e}")
            summary.fail(ref, str(e), f"Delete key pair {ref.identifier} in {ref.region} manually ({error_code(e) or e}).")
            continue
        log_success(logger, f"KeyPair: deleted {ref.identifier}")
        summary.record(ref, OutcomeStatus.DELETED)
        remove_local_key(settings.keys_dir, ref.identifier)


def remove_local_key(keys_dir, key_name):
    path = os.path.join(keys_dir, f"{key_name}.pem")
    if not os.path.exists(path):
        return False
    try:
        os.chmod(path, 0o600)
        os.remove(path)
    except OSError as e:
        logger.warning(f"KeyPair: could not remove local key file {path} ({e})")
        return False
    logger.info(f"KeyPair: removed local key file {path}")
    return True


# ---------- Report ----------
_KIND_LABELS = [
    (ResourceKind.INSTANCE, "EC2 instances"),
    (ResourceKind.SECURITY_GROUP, "Security groups"),
    (ResourceKind.BUCKET, "S3 buckets"),
    (ResourceKind.KEY_PAIR, "Key pairs"),
]


def render_summary(summary, log_file=None) -> str:
    bar = "=" * 60
    lines = [
        bar,
        "Cleanup Summary" + (" (DRY RUN)" if summary.dry_run else ""),
        bar,
        f"Region            : {summary.region}",
        f"Tag Filter        : {summary.tag_filter}",
    ]
    for kind, label in _KIND_LABELS:
        c = summary.counts_for(kind)
        lines.append(f"{label:<18}: {c['deleted']} deleted, {c['skipped']} skipped, {c['failed']} failed")
    lines += [
        f"Deleted           : {summary.deleted}",
        f"Skipped (dry run) : {summary.skipped}",
        f"Failed            : {summary.failed}",
        f"Warnings          : {summary.warned}",
    ]
    if summary.manual_actions:
        lines.append("Manual actions required:")
        for n, action in enumerate(summary.manual_actions, 1):
            lines.append(f"  {n}. {action}")
    else:
        lines.append("Manual actions    : none")
    lines.append(f"Log File          : {log_file or 'console only'}")
    lines.append(bar)
    return "\n".join(lines)
