"""Command-line interface (Typer-based).

Provides :func:`build_cli`, which constructs a Typer app with shared
options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``) and three commands:

- ``serve`` — run the service until SIGTERM/SIGINT.
- ``command`` — send one command to a device and print its reply.
- ``pair`` — pair a new device for a user and store it.

Replies and announcements are printed as JSON on stdout; failures are
printed as a structured error payload on stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, get_args

import typer
from pydantic import ValidationError

from camrelay._errors import CamRelayError, build_error_payload
from camrelay._logging import configure_logging
from camrelay._models import CommandKind, streaming_command
from camrelay._mqtt import MqttClient
from camrelay._service import CameraService
from camrelay._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_DEVICE_ERROR = 2
EXIT_RUNTIME_ERROR = 3

_CONNECT_TIMEOUT = 10.0

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

type ServiceFactory = Callable[[Settings], CameraService]


def _default_factory(settings: Settings) -> CameraService:
    return CameraService(settings=settings)


@dataclass
class _CliState:
    settings: Settings
    factory: ServiceFactory


def _run(coro: Any) -> Any:
    """Run *coro*, mapping failures onto exit codes."""
    try:
        return asyncio.run(coro)
    except CamRelayError as exc:
        typer.echo(build_error_payload(exc).to_json(), err=True)
        raise typer.Exit(EXIT_DEVICE_ERROR) from exc
    except (typer.Exit, SystemExit, KeyboardInterrupt):
        raise
    except Exception as exc:
        logger.error("Runtime error: %s", exc)
        raise typer.Exit(EXIT_RUNTIME_ERROR) from exc


async def _wait_for_broker(service: CameraService) -> None:
    mqtt = service.mqtt
    if isinstance(mqtt, MqttClient) and not await mqtt.wait_connected(_CONNECT_TIMEOUT):
        logger.warning("Broker not reachable after %.0fs", _CONNECT_TIMEOUT)


def build_cli(
    *,
    name: str = "camrelay",
    version: str = "0.0.0",
    service_factory: ServiceFactory = _default_factory,
) -> typer.Typer:
    """Construct the Typer CLI.

    Args:
        name: Program name shown by ``--version``.
        version: Version string shown by ``--version``.
        service_factory: Builds the service from parsed settings;
            tests inject one wired to a mock transport.
    """
    cli = typer.Typer(
        help=f"{name} v{version} — MQTT command bridge for camera devices",
        no_args_is_help=True,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )

        configure_logging(settings.logging, service=name, version=version)
        ctx.obj = _CliState(settings=settings, factory=service_factory)

        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())
            raise typer.Exit()

    @cli.command()
    def serve(ctx: typer.Context) -> None:
        """Run the service until interrupted."""
        state: _CliState = ctx.obj
        service = state.factory(state.settings)
        with contextlib.suppress(KeyboardInterrupt):
            _run(service.run())

    @cli.command()
    def command(
        ctx: typer.Context,
        token: Annotated[str, typer.Argument(help="Device token.")],
        kind: Annotated[
            CommandKind,
            typer.Argument(help="Command kind.", case_sensitive=False),
        ],
        action: Annotated[
            str,
            typer.Option("--action", help="Streaming action: ON or OFF."),
        ] = "ON",
        record_id: Annotated[
            str | None,
            typer.Option("--record-id", help="Record to fetch (memory)."),
        ] = None,
        folder_name: Annotated[
            str | None,
            typer.Option("--folder-name", help="Folder to fetch (memory)."),
        ] = None,
        timeout: Annotated[
            float | None,
            typer.Option("--timeout", help="Seconds to wait for the reply."),
        ] = None,
    ) -> None:
        """Send one command to a device and print its reply."""
        state: _CliState = ctx.obj
        if kind is CommandKind.MEMORY and (record_id is None or folder_name is None):
            raise typer.BadParameter(
                "memory commands need --record-id and --folder-name",
                param_hint="'--record-id'",
            )
        if kind is CommandKind.STREAMING:
            try:
                streaming_command(action)
            except ValueError as exc:
                raise typer.BadParameter(str(exc), param_hint="'--action'") from exc

        async def _send() -> Any:
            async with state.factory(state.settings) as service:
                await _wait_for_broker(service)
                if kind is CommandKind.MEMORY:
                    return await service.request_memory(
                        token,
                        record_id or "",
                        folder_name or "",
                        timeout,
                    )
                return await service.set_streaming(token, action, timeout)

        reply = _run(_send())
        typer.echo(json.dumps(reply))

    @cli.command()
    def pair(
        ctx: typer.Context,
        user: Annotated[
            str,
            typer.Option("--user", help="Username that will own the paired device."),
        ] = "cli",
        timeout: Annotated[
            float | None,
            typer.Option("--timeout", help="Seconds to wait for the device."),
        ] = None,
    ) -> None:
        """Pair a new device: issue a token, wait for the announcement, store the device."""
        state: _CliState = ctx.obj

        async def _pair() -> dict[str, Any]:
            async with state.factory(state.settings) as service:
                await _wait_for_broker(service)
                owner = await service.users.create(user)
                ticket = await service.initiate_pairing(owner.id, timeout)
                typer.echo(ticket.instructions, err=True)
                outcome = await service.pairing_outcome(ticket.token)
                device = outcome.device
                if device is None:
                    raise outcome.error or RuntimeError(f"Pairing for {ticket.token} did not complete")
                return {
                    "token": ticket.token,
                    "device_id": device.id,
                    "user_id": owner.id,
                    "announcement": outcome.announcement,
                }

        typer.echo(json.dumps(_run(_pair())))

    return cli


def main() -> None:
    """Console-script entrypoint."""
    from camrelay import __version__

    cli = build_cli(version=__version__)
    try:
        cli(standalone_mode=True)
    except SystemExit:
        raise
    except Exception as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)
