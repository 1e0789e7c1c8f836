# ec2_manager.py
import logging
import os
import tempfile

import click
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from errors import ProvisioningError
from utils import build_tags, error_code, log_success, start_command, tags_to_dict

logger = logging.getLogger(__name__)

_SSM_AMI_PARAMETERS = {
    "amazon-linux": [
        "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-6.1-x86_64",
        "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2",
    ],
    "ubuntu": [
        "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id",
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id",
    ],
}


def resolve_ami(ec2, ssm, ami: str) -> str:
    """Return AMI ID. Literal ids (ami-xxxx) are validated; 'amazon-linux'/'ubuntu' come from SSM."""
    if ami.startswith("ami-"):
        logger.info(f"Validating AMI: {ami}")
        try:
            images = ec2.describe_images(ImageIds=[ami]).get("Images", [])
        except ClientError as e:
            raise ProvisioningError(f"AMI not found: {ami} ({error_code(e) or e})") from e
        if not images:
            raise ProvisioningError(f"AMI not found: {ami}")
        return ami
    if ami not in _SSM_AMI_PARAMETERS:
        raise ProvisioningError(f"unsupported AMI alias {ami!r}; pass ami-xxxxxxxx, 'amazon-linux' or 'ubuntu'")
    for name in _SSM_AMI_PARAMETERS[ami]:
        try:
            return ssm.get_parameter(Name=name)["Parameter"]["Value"]
        except ClientError:
            continue
    raise ProvisioningError(f"could not resolve AMI {ami!r} from SSM")


def ensure_key_pair(ec2, key_name, keys_dir):
    """
    Reuse the key pair if AWS already has it, otherwise create it and save the
    private key as <keys_dir>/<key_name>.pem (mode 0400). Returns the local path.
    """
    key_file = os.path.join(keys_dir, f"{key_name}.pem")
    try:
        ec2.describe_key_pairs(KeyNames=[key_name])
        exists = True
    except ClientError as e:
        if error_code(e) != "InvalidKeyPair.NotFound":
            raise ProvisioningError(f"failed to look up key pair {key_name}: {e}") from e
        exists = False

    if exists:
        logger.info(f"AWS key pair '{key_name}' already exists")
        if os.path.exists(key_file):
            logger.info(f"Local private key exists: {key_file}")
            try:
                os.chmod(key_file, 0o400)
            except OSError as e:
                logger.debug(f"could not chmod {key_file}: {e}")
        else:
            logger.warning(f"Local private key missing: {key_file}")
        return key_file

    logger.info(f"Creating new key pair: {key_name}")
    try:
        material = ec2.create_key_pair(KeyName=key_name)["KeyMaterial"]
    except ClientError as e:
        raise ProvisioningError(f"failed to create key pair {key_name}: {e}") from e

    # write to a temp file first so a half-written key never sits at key_file
    try:
        os.makedirs(keys_dir, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=keys_dir, suffix=".tmp")
        with os.fdopen(fd, "w") as fh:
            fh.write(material)
        os.replace(tmp, key_file)
    except OSError as e:
        raise ProvisioningError(f"failed to save key file {key_file}: {e}") from e
    try:
        os.chmod(key_file, 0o400)
    except OSError:
        logger.warning(f"Could not set 0400 permissions on {key_file}")
    logger.info(f"Private key saved: {key_file}")
    return key_file


def launch_instance(ec2, settings, ami_id, security_group_ids=None, subnet_id=None):
    """Run one tagged instance and wait until it is running. Returns (instance_id, public_ip)."""
    name = f"{settings.key_name}-instance"
    kwargs = {
        "ImageId": ami_id,
        "InstanceType": settings.instance_type,
        "KeyName": settings.key_name,
        "MinCount": 1, "MaxCount": 1,
        "TagSpecifications": [{
            "ResourceType": "instance",
            "Tags": build_tags(settings.tag_filter, name),
        }],
    }
    if security_group_ids:
        kwargs["SecurityGroupIds"] = list(security_group_ids)
    if subnet_id:
        kwargs["SubnetId"] = subnet_id

    logger.info("Launching EC2 instance...")
    try:
        iid = ec2.run_instances(**kwargs)["Instances"][0]["InstanceId"]
    except ClientError as e:
        raise ProvisioningError(f"failed to launch instance: {e}") from e
    logger.info(f"Instance launched: {iid}")

    logger.info("Waiting for instance to reach RUNNING state...")
    try:
        ec2.get_waiter("instance_running").wait(InstanceIds=[iid])
        res = ec2.describe_instances(InstanceIds=[iid])
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Cleaning up EC2 instance: {iid}")
        try:
            ec2.terminate_instances(InstanceIds=[iid])
        except ClientError as cleanup_error:
            logger.error(f"could not terminate {iid}: {cleanup_error}")
        if isinstance(e, WaiterError):
            raise ProvisioningError(f"instance {iid} failed to start within timeout") from e
        raise ProvisioningError(f"instance {iid} failed to start: {e}") from e

    inst = res["Reservations"][0]["Instances"][0]
    public_ip = inst.get("PublicIpAddress") or "N/A"
    log_success(logger, f"EC2 setup completed. Instance: {iid}, IP: {public_ip}")
    return iid, public_ip


def list_instances(ec2, tag_filter):
    rows = []
    for page in ec2.get_paginator("describe_instances").paginate(Filters=[tag_filter.as_ec2_filter()]):
        for r in page.get("Reservations", []):
            for i in r.get("Instances", []):
                tags = tags_to_dict(i.get("Tags"))
                rows.append({
                    "Name": tags.get("Name", "-"),
                    "InstanceId": i["InstanceId"],
                    "State": i["State"]["Name"],
                    "InstanceType": i.get("InstanceType", "-"),
                    "PublicIpAddress": i.get("PublicIpAddress", "-"),
                })
    return rows


def ensure_tagged_instance(ec2, iid, tag_filter):
    """Refuse to touch instances this tool did not create."""
    res = ec2.describe_instances(InstanceIds=[iid])
    inst = res["Reservations"][0]["Instances"][0]
    if not tag_filter.matches(tags_to_dict(inst.get("Tags"))):
        raise ProvisioningError(f"refusing: instance {iid} is not tagged {tag_filter}")
    return inst


@click.group(name="ec2")
def ec2_group():
    """Manage Automation Lab EC2 instances"""


@ec2_group.command("create")
@click.option("--ami", default=None, help="amazon-linux | ubuntu | ami-xxxxxxxxxxxxxxxxx (default: $AMI_ID)")
@click.option("--instance-type", default=None, help="Instance type (default: $INSTANCE_TYPE or t3.micro)")
@click.option("--key-name", default=None, help="EC2 key pair name (default: $KEY_NAME or automation-key)")
@click.option("--sg-id", multiple=True, help="SecurityGroupIds (sg-...), can repeat")
@click.option("--subnet-id", default=None, help="SubnetId (optional)")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def create_instance_cmd(ami, instance_type, key_name, sg_id, subnet_id, region):
    """Create a key pair (if needed) and launch a tagged instance"""
    settings, session, log_file = start_command(
        region=region, ami=ami, instance_type=instance_type, key_name=key_name)
    ec2 = session.client("ec2", region_name=settings.region)
    ssm = session.client("ssm", region_name=settings.region)
    logger.info(f"Region: {settings.region}, AMI: {settings.ami}, Instance Type: {settings.instance_type}")
    try:
        key_file = ensure_key_pair(ec2, settings.key_name, settings.keys_dir)
        ami_id = resolve_ami(ec2, ssm, settings.ami)
        iid, public_ip = launch_instance(ec2, settings, ami_id, sg_id, subnet_id)
    except ProvisioningError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))

    bar = "=" * 60
    click.echo(bar)
    click.echo("EC2 Instance Created Successfully")
    click.echo(bar)
    click.echo(f"Instance ID       : {iid}")
    click.echo(f"Public IP         : {public_ip}")
    click.echo(f"Instance Type     : {settings.instance_type}")
    click.echo(f"Region            : {settings.region}")
    if os.path.exists(key_file):
        click.echo(f"SSH Command       : ssh -i \"{key_file}\" ec2-user@{public_ip}")
    else:
        click.echo("SSH Command       : Key file missing")
    click.echo(f"Log File          : {log_file or 'console only'}")
    click.echo(bar)


@ec2_group.command("list")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def list_instances_cmd(region):
    """List tagged instances"""
    settings, session, _ = start_command(region=region)
    ec2 = session.client("ec2", region_name=settings.region)
    try:
        rows = list_instances(ec2, settings.tag_filter)
    except ClientError as e:
        raise click.ClickException(f"error listing instances: {e}")
    if not rows:
        click.echo(f"No instances tagged {settings.tag_filter}.")
    for i in rows:
        click.echo(f"{i['Name']}\t{i['InstanceId']}\t{i['State']}\t{i['InstanceType']}\t{i['PublicIpAddress']}")


@ec2_group.command("terminate")
@click.option("--id", "iid", required=True, help="InstanceId")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
def terminate_instance_cmd(iid, region):
    """Terminate one tagged instance"""
    settings, session, _ = start_command(region=region)
    ec2 = session.client("ec2", region_name=settings.region)
    try:
        ensure_tagged_instance(ec2, iid, settings.tag_filter)
        ec2.terminate_instances(InstanceIds=[iid])
    except ProvisioningError as e:
        raise click.ClickException(str(e))
    except ClientError as e:
        raise click.ClickException(f"error terminating: {e}")
    click.echo("terminating...")
