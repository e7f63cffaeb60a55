"""Click CLI for the ID Guard telemetry core.

Entry point registered in ``pyproject.toml`` as ``idguard-telemetry``.

Subcommands::

    idguard-telemetry                       # same as ``watch``
    idguard-telemetry watch --interval 5    # poll attendance + SOS, print NDJSON
    idguard-telemetry track --lat 18.52 --lon 73.85
    idguard-telemetry track --from-device   # position from the GPS channel
    idguard-telemetry sos-test              # raise a local test alert
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import asdict
from typing import Optional

import click

from idguard_telemetry import __version__
from idguard_telemetry.config import AppConfig, load_config
from idguard_telemetry.geolocation import ChannelGeolocationProvider, provider_for
from idguard_telemetry.logs import collect_secret_values, setup_logging
from idguard_telemetry.models import ChannelRole
from idguard_telemetry.output import (
    StdoutSink,
    alert_event,
    attendance_snapshot,
    banner_event,
    location_event,
)
from idguard_telemetry.session import DashboardSession, build_source

logger = logging.getLogger("idguard_telemetry")

DEFAULT_CONFIG = "/etc/idguard/config.json"


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--token", default=None, help="Override the telemetry token.")
@click.option("--base-url", default=None, help="Override the telemetry endpoint base URL.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
    token: Optional[str],
    base_url: Optional[str],
) -> None:
    """ID Guard telemetry: attendance, SOS alerts and live tracking as NDJSON."""
    cfg_path = config_path or os.environ.get("IDGUARD_CONFIG", DEFAULT_CONFIG)

    overrides: dict[str, str] = {}
    if token:
        overrides["IDGUARD_TOKEN"] = token
    if base_url:
        overrides["IDGUARD_BASE_URL"] = base_url

    try:
        cfg = load_config(cfg_path, overrides=overrides)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    # Explicit flags win even when the config file hard-codes the values
    if token:
        cfg.telemetry.token = token
    if base_url:
        cfg.telemetry.base_url = base_url

    effective_level = log_level or os.environ.get("IDGUARD_LOG_LEVEL") or cfg.logging.level
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    setup_logging(effective_level, cfg.logging.format, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    ctx.obj = cfg
    if ctx.invoked_subcommand is None:
        ctx.invoke(watch)


@main.command()
@click.option("--interval", default=5.0, show_default=True, type=float,
              help="Seconds between SOS polls.")
@click.option("--attendance-every", default=12, show_default=True, type=int,
              help="Refresh attendance every N SOS polls (0 = only on start).")
@click.option("--count", default=0, type=int, help="Stop after N SOS polls (0 = run forever).")
@click.pass_obj
def watch(cfg: AppConfig, interval: float, attendance_every: int, count: int) -> None:
    """Poll attendance on start and the SOS channel periodically."""
    logger.info("Starting idguard-telemetry %s (viewer=%s, backend=%s)",
                __version__, cfg.viewer_id, cfg.telemetry.backend)
    asyncio.run(_watch(cfg, interval, attendance_every, count))


@main.command()
@click.option("--lat", type=float, default=None, help="Latitude of this host.")
@click.option("--lon", type=float, default=None, help="Longitude of this host.")
@click.option("--from-device", is_flag=True, help="Use the device GPS channel.")
@click.pass_obj
def track(cfg: AppConfig, lat: Optional[float], lon: Optional[float], from_device: bool) -> None:
    """Capture a position and print its map link."""
    if not asyncio.run(_track(cfg, lat, lon, from_device)):
        raise SystemExit(2)


@main.command("sos-test")
@click.option("--lat", type=float, default=None, help="Latitude of this host.")
@click.option("--lon", type=float, default=None, help="Longitude of this host.")
@click.pass_obj
def sos_test(cfg: AppConfig, lat: Optional[float], lon: Optional[float]) -> None:
    """Raise a local test SOS alert without touching the backend."""
    asyncio.run(_sos_test(cfg, lat, lon))


# ── async drivers ───────────────────────────────────────────────────


async def _watch(cfg: AppConfig, interval: float, attendance_every: int, count: int) -> None:
    """Caller-side refresh policy: poll attendance on start, SOS every tick."""
    loop = asyncio.get_running_loop()
    sink = StdoutSink()
    stop = asyncio.Event()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    polls = 0
    async with DashboardSession(cfg) as session:
        session.sos.subscribe(lambda alert: sink.emit(alert_event(alert)))
        session.sos.banner.subscribe(lambda visible: sink.emit(banner_event(visible)))
        try:
            while not stop.is_set():
                if polls == 0 or (attendance_every and polls % attendance_every == 0):
                    await session.attendance.poll()
                    sink.emit(attendance_snapshot(session.attendance))

                await session.sos.poll()
                polls += 1
                if count and polls >= count:
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        except BrokenPipeError:
            pass
        logger.info("Watch stopped after %d SOS poll(s)", polls)


async def _track(cfg: AppConfig, lat: Optional[float], lon: Optional[float],
                 from_device: bool) -> bool:
    source = build_source(cfg)
    if from_device:
        provider = ChannelGeolocationProvider(source, cfg.channels.as_mapping()[ChannelRole.LOCATION])
    else:
        provider = provider_for(lat, lon)

    async with DashboardSession(cfg, source=source, geolocation=provider) as session:
        url = await session.tracking.track_live()
        StdoutSink().emit(location_event(url, session.tracking.location_error))
    return url is not None


async def _sos_test(cfg: AppConfig, lat: Optional[float], lon: Optional[float]) -> None:
    async with DashboardSession(cfg, geolocation=provider_for(lat, lon)) as session:
        alert = await session.simulate_sos()
        StdoutSink().emit(alert_event(alert))
