"""shcsync command line: ``shcsync --config PATH {shc,ems} ...``."""

from __future__ import annotations

import sys

import click
from loguru import logger

from shcsync import __version__
from shcsync.config import LoadedConfig, load_config
from shcsync.ems import EmsClient
from shcsync.errors import ShcsyncError
from shcsync.shc import ShcClient


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _config(ctx: click.Context) -> LoadedConfig:
    try:
        return load_config(ctx.obj["config_path"])
    except ShcsyncError as exc:
        raise click.ClickException(f"can't read config: {exc}") from exc


def _shc_client(cfg: LoadedConfig) -> ShcClient:
    return ShcClient(
        cfg.shc_host,
        cfg.trust_anchor,
        cfg.client_identity,
        public_port=cfg.shc_ports.public,
        client_mgmt_port=cfg.shc_ports.client_mgmt,
        api_port=cfg.shc_ports.api,
        certificate_encoding=cfg.certificate_encoding,
        timeout=cfg.request_timeout,
    )


@click.group()
@click.version_option(__version__, prog_name="shcsync")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(dir_okay=False),
    help="config file",
)
@click.option("-v", "--verbose", is_flag=True, help="show debug logs on stderr")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool) -> None:
    """Sync Bosch Smart Home Controller (SHC) data to an EMS-ESP device."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# === SHC ===
@cli.group()
def shc() -> None:
    """Interact with the SHC device."""


@shc.command("ping")
@click.pass_context
def shc_ping(ctx: click.Context) -> None:
    """Test the connection to the SHC."""
    client = _shc_client(_config(ctx))
    try:
        res = client.ping()
    except ShcsyncError as exc:
        raise click.ClickException(f"can't ping shc: {exc}") from exc
    click.echo(res)


@shc.command("register")
@click.pass_context
def shc_register(ctx: click.Context) -> None:
    """Register this client with the SHC.

    Uses the https://{shc-host}:8443/smarthome/clients endpoint to register
    this client (identified by its client certificate, as given in the
    config).  Press the button on the SHC first.
    """
    client = _shc_client(_config(ctx))
    password = click.prompt(
        "Enter Bosch Smart Home system password", hide_input=True, err=True,
    )
    try:
        res = client.register(password)
    except ShcsyncError as exc:
        raise click.ClickException(f"register failed: {exc}") from exc

    click.echo("Registration successful.")
    if res.message:
        click.echo("Message from SHC:")
        click.echo(res.message)


@shc.command("get")
@click.argument("path")
@click.pass_context
def shc_get(ctx: click.Context, path: str) -> None:
    """GET PATH on the SHC API port using the registered client certificate."""
    client = _shc_client(_config(ctx))
    try:
        res = client.request("GET", path)
    except ShcsyncError as exc:
        raise click.ClickException(f"GET {path} failed: {exc}") from exc
    if not res.ok:
        raise click.ClickException(f"GET {path} failed with status {res.status}: {res.body}")
    click.echo(res.body)


# === EMS ===
@cli.group()
def ems() -> None:
    """Interact with the EMS-ESP device."""


@ems.command("ping")
@click.pass_context
def ems_ping(ctx: click.Context) -> None:
    """Test the connection to EMS-ESP."""
    cfg = _config(ctx)
    client = EmsClient(cfg.ems_esp_hostport, cfg.ems_esp_access_token, timeout=cfg.request_timeout)
    try:
        res = client.ping()
    except ShcsyncError as exc:
        raise click.ClickException(f"can't ping ems: {exc}") from exc
    click.echo(res)


def main() -> None:
    cli(obj={})
