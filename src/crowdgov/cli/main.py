"""
Main CLI entry point for crowdgov.

``crowdgov serve`` runs the governance HTTP API; every other command is a
client of that API.
"""

from __future__ import annotations

import logging
import sys

import click

from crowdgov import __version__
from crowdgov.cli.governance_commands import governance
from crowdgov.core.config import API_URL, ConfigurationError, GovernanceConfig
from crowdgov.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


@click.group()
@click.option("--api-url", envvar="CROWDGOV_API_URL", default=API_URL, show_default=True, help="Governance API URL")
@click.option("--account", envvar="CROWDGOV_ACCOUNT", default=None, help="Acting account (sent as X-Account)")
@click.option("--timeout", default=30.0, type=float, show_default=True, help="Request timeout in seconds")
@click.option("--json-output", is_flag=True, help="Output raw JSON")
@click.version_option(__version__, prog_name="crowdgov")
@click.pass_context
def cli(ctx: click.Context, api_url: str, account: str | None, timeout: float, json_output: bool):
    """
    crowdgov - cross-organization governance

    Proposals, weighted voting with delegation, and escrowed proposal
    crowdfunding over a logical clock.
    """
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url
    ctx.obj["account"] = account
    ctx.obj["timeout"] = timeout
    ctx.obj["json_output"] = json_output


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to CROWDGOV_API_HOST)")
@click.option("--port", default=None, type=int, help="Bind port (defaults to CROWDGOV_API_PORT)")
@click.option("--debug", is_flag=True, help="Run the Flask development server in debug mode")
def serve(host: str | None, port: int | None, debug: bool):
    """Run the governance HTTP API."""
    from crowdgov.api.governance_api import create_app

    try:
        config = GovernanceConfig.from_env()
    except ConfigurationError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}")

    setup_logging(
        name="crowdgov",
        log_file=config.log_file or None,
        level=config.log_level,
        environment=config.environment,
    )
    app = create_app(config=config)
    engine = app.config["GOVERNANCE_ENGINE"]
    bind_host = host or config.api_host
    bind_port = port or config.api_port

    logger.info(
        "Serving governance API on %s:%d",
        bind_host,
        bind_port,
        extra={"event": "cli.serve", "network": config.network.value},
    )
    try:
        app.run(host=bind_host, port=bind_port, debug=debug, use_reloader=False)
    finally:
        if config.state_file:
            engine.save_state()


cli.add_command(governance)


def main():
    return cli(obj={})


if __name__ == "__main__":
    sys.exit(main() or 0)
