"""Command-line interface for geoipdns."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

import click

from geoipdns import __version__
from geoipdns.config import Config, _parse_duration
from geoipdns.errors import (
    ConfigError,
    FetchError,
    GeoIPDNSError,
    LoadError,
    LockError,
)
from geoipdns.formatter import OutputMode
from geoipdns.server import run

logger = logging.getLogger(__name__)


def _duration(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> timedelta | None:
    """Parse a duration option such as ``24h`` or ``90s``."""
    if value is None:
        return None
    try:
        return _parse_duration(value)
    except ConfigError as e:
        raise click.BadParameter(str(e), ctx=ctx, param=param) from e


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    envvar="GEOIPDNS_CONF_FILE",
    help="Configuration file.",
)
@click.option("--addr", "address", help="Address to listen on, e.g. ':5300'.")
@click.option("--domain", help="Domain suffix stripped from query names.")
@click.option("--db", "database", help="Path or URL of the GeoIP database.")
@click.option(
    "--update",
    "update_interval",
    callback=_duration,
    help="Interval between database updates, e.g. '24h'.",
)
@click.option(
    "--retry",
    "max_retry_interval",
    callback=_duration,
    help="Maximum delay between failed updates, e.g. '1h'.",
)
@click.option(
    "--silent",
    is_flag=True,
    default=None,
    help="Disable request and event logging.",
)
@click.option("--lang", "language", help="Language of localized names.")
@click.option(
    "--output-mode",
    type=click.Choice([mode.value for mode in OutputMode], case_sensitive=False),
    help="Put all fields in one string or each in its own.",
)
@click.option(
    "--cache-dir",
    "cache_directory",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory downloaded databases are kept in.",
)
@click.version_option(__version__, "-V", "--version", prog_name="geoipdns")
def main(
    config_file: Path | None,
    **options: object,
) -> None:
    """Answer DNS TXT queries with GeoIP data.

    Query ``<ip or hostname>.<domain>`` for TXT records to get the country,
    subdivision, city, postal code, time zone, coordinates and metro code
    of the address.

    Example usage:

        # Serve a local database
        geoipdns --addr :5300 --db /var/lib/GeoIP/GeoLite2-City.mmdb

        # Download and refresh a database every 12 hours
        geoipdns --domain geo.example.com --update 12h

        dig @localhost -p 5300 TXT 8.8.8.8.geo.example.com
    """
    config = _setup(config_file, options)

    # except* also unwraps exceptions raised inside task groups. sys.exit()
    # cannot be called inside except* handlers, so the code is recorded.
    exit_code: int = 0
    try:
        asyncio.run(run(config))
    except* ConfigError as eg:
        for exc in eg.exceptions:
            click.echo(f"Configuration error: {exc}", err=True)
        exit_code = 1
    except* LoadError as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            click.echo(f"Database error: {exc}", err=True)
        exit_code = 1
    except* FetchError as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            click.echo(f"Download error: {exc}", err=True)
        exit_code = 1
    except* LockError as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            click.echo(f"Lock error: {exc}", err=True)
        exit_code = 1
    except* GeoIPDNSError as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            click.echo(f"Error: {exc}", err=True)
        exit_code = 1
    except* OSError as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            click.echo(f"Network error: {exc}", err=True)
        exit_code = 1
    except* KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        exit_code = 130
    except* Exception as eg:
        for exc in eg.exceptions:  # type: ignore[assignment]
            logger.error("Unexpected error", exc_info=exc)  # noqa: TRY400
            click.echo(f"Unexpected error ({type(exc).__name__}): {exc}", err=True)
        exit_code = 1
    if exit_code:
        sys.exit(exit_code)


def _setup(config_file: Path | None, options: dict[str, object]) -> Config:
    """Configure logging and load configuration."""
    try:
        config = Config.from_file(config_file=config_file, **options)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=logging.WARNING if config.silent else logging.INFO,
        format="%(message)s",
    )

    logger.info("geoipdns version %s", __version__)
    if config_file:
        logger.info("Using config file %s", config_file)

    return config


if __name__ == "__main__":
    main()
