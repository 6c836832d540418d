"""The descil command-line utility."""

import json
import logging

import click
from tabulate import tabulate

from descil.config import get_config
from descil.exceptions import DescilServiceException
from descil.service import descil_service_from_config
from descil.version import __version__

logger = logging.getLogger(__name__)


def error(msg):
    click.secho("\n❯❯ " + msg, err=True, fg="red")


def _service(ctx):
    config = get_config()
    try:
        if not config.ready:
            config.load(strict=False, json_file=ctx.obj.get("config_file"))
        logging.basicConfig(level=config.get("loglevel", logging.INFO))
        return descil_service_from_config(config)
    except DescilServiceException as e:
        error(str(e))
        raise click.Abort()


def _wait(result):
    try:
        return result.get()
    except DescilServiceException as e:
        error(str(e))
        raise click.Abort()


def _echo_body(response):
    click.echo(json.dumps(response.body, indent=2, sort_keys=True))


@click.group()
@click.version_option(__version__, "--version", "-v", message="%(version)s")
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with key, project and uri (or file)",
)
@click.pass_context
def descil(ctx, config_file):
    """Talk to the DeSciL turker authentication service."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


@descil.command()
@click.pass_context
def hello(ctx):
    """Check the connection and the service key."""
    service = _service(ctx)
    _echo_body(_wait(service.hello_world()))


@descil.command()
@click.option(
    "--show-all-columns",
    is_flag=True,
    flag_value=True,
    help="Display every field returned by the service",
)
@click.pass_context
def codes(ctx, show_all_columns):
    """Fetch the project's access codes and list them."""
    service = _service(ctx)
    logger.info("Getting codes...")
    _wait(service.get_codes())
    rows = [record.as_dict() for record in service.registry]
    if not show_all_columns:
        columns = ("access_code", "used", "valid", "checked_in", "checked_out")
        rows = [{k: row.get(k) for k in columns} for row in rows]
    if not rows:
        click.echo("No codes found.")
        return
    click.echo(tabulate(rows, headers="keys", tablefmt="github"))


@descil.command("check-in")
@click.argument("access_code")
@click.pass_context
def check_in(ctx, access_code):
    """Validate ACCESS_CODE with the service."""
    service = _service(ctx)
    _echo_body(_wait(service.check_in(access_code)))


@descil.command("check-out")
@click.argument("access_code")
@click.argument("exit_code")
@click.option("--bonus", type=float, default=0, help="Bonus to pay the worker")
@click.pass_context
def check_out(ctx, access_code, exit_code, bonus):
    """Check out the pair ACCESS_CODE, EXIT_CODE."""
    service = _service(ctx)
    _echo_body(_wait(service.check_out(access_code, exit_code, bonus)))


@descil.command("drop-out")
@click.argument("access_code")
@click.argument("exit_code")
@click.option("--bonus", type=float, default=0, help="Bonus to pay the worker")
@click.pass_context
def drop_out(ctx, access_code, exit_code, bonus):
    """Mark the pair ACCESS_CODE, EXIT_CODE as dropped out."""
    service = _service(ctx)
    _echo_body(_wait(service.drop_out(access_code, exit_code, bonus)))


@descil.command("post-codes")
@click.argument("codes_file", type=click.File("r"))
@click.pass_context
def post_codes(ctx, codes_file):
    """Post the check-out / drop-out results listed in CODES_FILE (JSON)."""
    try:
        batch = json.load(codes_file)
    except ValueError as e:
        error(f"{codes_file.name} is not valid JSON: {e}")
        raise click.Abort()
    service = _service(ctx)
    response = _wait(service.post_codes(batch))
    logger.info(f"Posted {len(batch)} codes.")
    _echo_body(response)
