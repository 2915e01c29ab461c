import json
import os
from pathlib import Path

import click
import yaml
from opentelemetry import trace
from structlog import get_logger

from .discovery import NoFeedsFoundError, discover_feeds
from .settings import DEFAULT_CONFIG_PATH, get_settings
from .utils import setup_logging, setup_tracing

logger = get_logger(__package__)
tracer = trace.get_tracer(__package__ or "__main__")


@click.group()
@click.version_option(package_name="luotain")
@click.option("--debug", is_flag=True, help="Enable debug mode.", default=bool(os.getenv("DEBUG", False)))
def cli(debug: bool):
    if debug:
        os.environ["DEBUG"] = "1"

    setup_logging(debug=debug)
    setup_tracing()


@cli.command()
@click.argument("url")
@click.option("--json", "as_json", is_flag=True, help="Print feeds as JSON.")
def discover(url: str, as_json: bool):
    """
    Discover feeds from URL.
    """
    with tracer.start_as_current_span("cli.discover") as span:
        span.set_attribute("url", url)
        try:
            feeds = discover_feeds(url)
        except NoFeedsFoundError as e:
            raise click.ClickException(e.message) from e

    if as_json:
        click.echo(json.dumps([feed.model_dump(mode="json", by_alias=True) for feed in feeds], indent=2))
        return

    for feed in feeds:
        click.echo(str(feed))
        if feed.description:
            click.echo(f"    {feed.description}")


@cli.group("settings")
def settings_cli():
    """
    Manage settings.
    """


@settings_cli.command()
def show():
    """
    Show the currently effective settings.
    """
    click.echo(get_settings().model_dump_json(indent=2))


@settings_cli.command()
@click.argument("filename", type=click.Path(path_type=Path, exists=False, dir_okay=False, writable=True), default=DEFAULT_CONFIG_PATH)
def generate(filename: Path):
    """
    Generate the settings file <FILENAME>.

    By default, it will be created either in the user config directory or in the file defined by the
    $LUOTAIN_CONFIG_FILE environment variable.
    """
    filename.parent.mkdir(parents=True, exist_ok=True)

    with filename.open("w", encoding="utf-8") as f:
        yaml.safe_dump(get_settings().model_dump(mode="json"), f, sort_keys=False)
    click.echo(f"Settings file generated at {filename}")


if __name__ == "__main__":
    cli()
