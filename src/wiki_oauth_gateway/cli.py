"""Command-line interface for the wiki OAuth gateway."""

from __future__ import annotations

import asyncio
import sys

import typer

from wiki_oauth_gateway import __version__
from wiki_oauth_gateway.config import Config, ConfigError, load_config
from wiki_oauth_gateway.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="wiki-oauth-gateway",
    help="OAuth 1.0a login and API proxy gateway for MediaWiki sites",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"wiki-oauth-gateway version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Wiki OAuth gateway CLI."""


@app.command()
def serve(
    config_path: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file (JSON or YAML)",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    host: str | None = typer.Option(
        None,
        "--host",
        "-h",
        help="Host to bind to",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to bind to",
    ),
    callback_mode: str | None = typer.Option(
        None,
        "--callback-mode",
        "-m",
        help="How logins complete (redirect, popup or oob)",
    ),
) -> None:
    """Run the gateway HTTP server."""
    cli_args: dict[str, str | int | None] = {}
    if log_level:
        cli_args["log_level"] = log_level
    if host:
        cli_args["host"] = host
    if port:
        cli_args["port"] = port
    if callback_mode:
        cli_args["callback_mode"] = callback_mode

    try:
        config = load_config(path=config_path, cli_args=cli_args)

        setup_logging(config)
        logger = get_logger(__name__)

        logger.info(
            "Starting wiki OAuth gateway (app: %s, env: %s, callback mode: %s)",
            config.app_name,
            config.environment.value,
            config.callback_mode.value,
        )

        asyncio.run(_run_server(config))

    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        logger = get_logger(__name__)
        logger.info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


async def _run_server(config: Config) -> None:
    from wiki_oauth_gateway.server import create_app
    from wiki_oauth_gateway.web import run_server

    web_app = create_app(config)
    await run_server(web_app, config.host, config.port, config.log_level.value.lower())


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"wiki-oauth-gateway version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
