# sg_manager.py
import logging

import click
from botocore.exceptions import ClientError

from errors import ProvisioningError
from utils import build_tags, error_code, log_success, start_command, tag_resource, tags_to_dict

logger = logging.getLogger(__name__)

INGRESS_PORTS = (22, 80)  # SSH, HTTP
INGRESS_CIDR = "0.0.0.0/0"


def _ingress_rule(port):
    return {
        "IpProtocol": "tcp",
        "FromPort": port,
        "ToPort": port,
        "IpRanges": [{"CidrIp": INGRESS_CIDR}],
    }


def create_security_group(ec2, settings, name=None, vpc_id=None) -> str:
    """Create the lab security group, tag it and open SSH/HTTP. Returns the group id."""
    name = name or settings.sg_name
    logger.info(f"Starting Security Group creation: {name}")
    kwargs = {"GroupName": name, "Description": settings.sg_description}
    if vpc_id:
        kwargs["VpcId"] = vpc_id
    try:
        sg_id = ec2.create_security_group(**kwargs)["GroupId"]
    except ClientError as e:
        raise ProvisioningError(f"failed to create security group {name}: {e}") from e

    try:
        tag_resource(ec2, sg_id, "ec2", build_tags(settings.tag_filter, name))
        logger.info("Authorizing inbound rules (SSH & HTTP)")
        for port in INGRESS_PORTS:
            try:
                ec2.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=[_ingress_rule(port)])
            except ClientError as e:
                if error_code(e) != "InvalidPermission.Duplicate":
                    raise
    except ClientError as e:
        logger.warning(f"Cleaning up security group {sg_id}")
        try:
            ec2.delete_security_group(GroupId=sg_id)
        except ClientError as cleanup_error:
            logger.error(f"could not remove security group {sg_id}: {cleanup_error}")
        raise ProvisioningError(f"failed to configure security group {sg_id}: {e}") from e

    log_success(logger, f"Security Group created: {sg_id}")
    return sg_id


def list_security_groups(ec2, tag_filter):
    groups = []
    for page in ec2.get_paginator("describe_security_groups").paginate(Filters=[tag_filter.as_ec2_filter()]):
        for sg in page.get("SecurityGroups", []):
            groups.append({
                "GroupId": sg["GroupId"],
                "GroupName": sg.get("GroupName", "-"),
                "VpcId": sg.get("VpcId", "-"),
                "Name": tags_to_dict(sg.get("Tags")).get("Name", "-"),
            })
    return groups


@click.group(name="sg")
def sg_group():
    """Manage Automation Lab security groups"""


@sg_group.command("create")
@click.option("--name", default=None, help="Group name (default: $SG_NAME or devops-sg)")
@click.option("--vpc-id", default=None, help="VPC ID (default VPC if omitted)")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def create_sg_cmd(name, vpc_id, region):
    """Create a tagged security group allowing SSH and HTTP"""
    settings, session, _ = start_command(region=region)
    ec2 = session.client("ec2", region_name=settings.region)
    try:
        sg_id = create_security_group(ec2, settings, name=name, vpc_id=vpc_id)
    except ProvisioningError as e:
        raise click.ClickException(str(e))
    click.echo(f"security group created: {sg_id}")


@sg_group.command("list")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def list_sg_cmd(region):
    """List tagged security groups"""
    settings, session, _ = start_command(region=region)
    ec2 = session.client("ec2", region_name=settings.region)
    try:
        groups = list_security_groups(ec2, settings.tag_filter)
    except ClientError as e:
        raise click.ClickException(f"error listing security groups: {e}")
    if not groups:
        click.echo(f"No security groups tagged {settings.tag_filter}.")
    for g in groups:
        click.echo(f"{g['Name']}\t{g['GroupId']}\t{g['GroupName']}\t{g['VpcId']}")
