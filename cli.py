# cli.py
import logging

import click

from cleanup import cleanup_resources, render_summary
from ec2_manager import ec2_group
from errors import ConfigurationError, PreflightError
from s3_manager import s3_group
from settings import load_settings
from sg_manager import sg_group
from utils import get_session, setup_logging

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """automation-lab: provision and reclaim Automation Lab resources (EC2, security groups, S3)"""


cli.add_command(ec2_group, name="ec2")
cli.add_command(sg_group, name="sg")
cli.add_command(s3_group, name="s3")


@cli.command("cleanup")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.option("--dry-run", is_flag=True, help="Report only, delete nothing (default: $DRY_RUN)")
@click.option("--region", default=None, help="AWS region (default: $AWS_REGION)")
@click.option("--tag-key", default=None, help="Tag key to match (default: $TAG_KEY or Project)")
@click.option("--tag-value", default=None, help="Tag value to match (default: $TAG_VALUE or AutomationLab)")
@click.option("--key-pattern", default=None, help="Key pair name substring (default: $KEY_NAME_PATTERN or automation)")
def cleanup_cmd(yes, dry_run, region, tag_key, tag_value, key_pattern):
    """Delete every resource tagged TAG_KEY=TAG_VALUE (instances, security groups, buckets, key pairs)"""
    try:
        settings = load_settings(region=region, tag_key=tag_key, tag_value=tag_value,
                                 dry_run=dry_run or None, key_name_pattern=key_pattern)
    except (ConfigurationError, PreflightError) as e:
        raise click.ClickException(str(e))
    log_file = setup_logging(settings.log_file)
    if not yes and not settings.dry_run:
        confirm = input(f"Destructive! Delete all resources tagged {settings.tag_filter} "
                        f"in {settings.region}? Type YES: ")
        if confirm.strip().lower() != "yes":
            click.echo("Aborted.")
            return
    try:
        summary = cleanup_resources(settings, session=get_session(settings.region))
    except PreflightError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))
    click.echo(render_summary(summary, log_file))


def main():
    cli()


if __name__ == "__main__":
    main()
