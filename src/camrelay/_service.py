"""Service composition root.

:class:`CameraService` is constructed explicitly with its transport and
repository collaborators, wires the core components together and owns
their lifecycle.  There is no module-level instance: whoever hosts the
service (the CLI, an HTTP application's lifespan, a test) creates one,
starts it and stops it.

Typical usage::

    async with CameraService(settings=Settings()) as service:
        reply = await service.set_streaming(token, "ON")

Orchestration order:

1. Build correlator, negotiator, projector, ingestor, router.
2. ``start()``: register the router as the message callback, subscribe
   to the device topic patterns, start the transport.
3. ``stop()``: fail every outstanding waiter with ``ServiceStopped``,
   cancel background work, stop the transport.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from collections.abc import Callable
from datetime import timedelta
from types import TracebackType
from typing import Any, Self

from camrelay._clock import ClockPort, SystemClock, WallClock, utc_now
from camrelay._correlator import CommandCorrelator
from camrelay._models import CommandKind, memory_command, streaming_command
from camrelay._mqtt import MqttClient, MqttLifecycle, MqttMessageHandler, MqttPort
from camrelay._pairing import (
    PairingCoordinator,
    PairingNegotiator,
    PairingOutcome,
    PairingState,
    PairingTicket,
    generate_device_token,
)
from camrelay._pending import OverlapPolicy
from camrelay._projection import RecordIngestor, StatusProjector
from camrelay._repository import (
    DeviceRepository,
    InMemoryDeviceRepository,
    InMemoryRecordRepository,
    InMemoryUserRepository,
    RecordRepository,
    UserRepository,
)
from camrelay._router import TopicRouter
from camrelay._settings import Settings
from camrelay._tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class CameraService:
    """Owns the command correlation and pairing engine.

    Args:
        settings: Service settings; defaults are used when omitted.
        mqtt: Transport.  When ``None``, a real :class:`MqttClient` is
            built from ``settings.mqtt``.
        devices: Device repository (in-memory when omitted).
        records: Record repository (in-memory when omitted).
        users: User repository (in-memory when omitted).
        clock: Monotonic clock for request deadlines.
        wall_clock: Wall clock for liveness checks.
        name: Service name, used for the generated MQTT client id.
        token_factory: Source of candidate pairing tokens.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        devices: DeviceRepository | None = None,
        records: RecordRepository | None = None,
        users: UserRepository | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock | None = None,
        name: str = "camrelay",
        token_factory: Callable[[], str] = generate_device_token,
    ) -> None:
        self._settings = settings if settings is not None else Settings()
        self._name = name
        self._wall_clock = wall_clock if wall_clock is not None else utc_now
        resolved_clock = clock if clock is not None else SystemClock()
        prefix = self._settings.mqtt.topic_prefix

        self._mqtt = self._create_mqtt(mqtt)
        self._devices = (
            devices
            if devices is not None
            else InMemoryDeviceRepository(clock=self._wall_clock)
        )
        self._records = (
            records
            if records is not None
            else InMemoryRecordRepository(clock=self._wall_clock)
        )
        self._users = users if users is not None else InMemoryUserRepository()
        self._tasks = BackgroundTasks()

        self._correlator = CommandCorrelator(
            mqtt=self._mqtt,
            topic_prefix=prefix,
            default_timeout=self._settings.commands.timeout,
            policy=OverlapPolicy(self._settings.commands.overlap_policy),
            clock=resolved_clock,
        )
        self._negotiator = PairingNegotiator(
            default_timeout=self._settings.pairing.timeout,
            clock=resolved_clock,
        )
        self._pairing = PairingCoordinator(
            negotiator=self._negotiator,
            devices=self._devices,
            users=self._users,
            tasks=self._tasks,
            topic_prefix=prefix,
            token_factory=token_factory,
        )
        self._router = TopicRouter(
            topic_prefix=prefix,
            correlator=self._correlator,
            negotiator=self._negotiator,
            projector=StatusProjector(devices=self._devices),
            ingestor=RecordIngestor(devices=self._devices, records=self._records),
            tasks=self._tasks,
        )
        self._started = False

    # -- Collaborators ------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def mqtt(self) -> MqttPort:
        return self._mqtt

    @property
    def devices(self) -> DeviceRepository:
        return self._devices

    @property
    def records(self) -> RecordRepository:
        return self._records

    @property
    def users(self) -> UserRepository:
        return self._users

    @property
    def correlator(self) -> CommandCorrelator:
        return self._correlator

    @property
    def negotiator(self) -> PairingNegotiator:
        return self._negotiator

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to device topics and start the transport."""
        if self._started:
            logger.debug("CameraService.start() called while already running")
            return
        if isinstance(self._mqtt, MqttMessageHandler):
            self._mqtt.on_message(self._router.route)
        for topic in self._router.subscriptions:
            await self._mqtt.subscribe(topic)
            logger.debug("Subscribed to topic: %s", topic)
        if isinstance(self._mqtt, MqttLifecycle):
            await self._mqtt.start()
        self._started = True
        logger.info(
            "Camera service started (prefix=%s)",
            self._settings.mqtt.topic_prefix,
        )

    async def stop(self) -> None:
        """Drain waiters, cancel background work, disconnect.

        Idempotent — safe to call multiple times.
        """
        self._correlator.shutdown()
        self._negotiator.shutdown()
        # One loop pass so drained waiters observe ServiceStopped first.
        await asyncio.sleep(0)
        await self._tasks.cancel_all()
        if self._started and isinstance(self._mqtt, MqttLifecycle):
            await self._mqtt.stop()
        if self._started:
            logger.info("Shutdown complete")
        self._started = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def run(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Run until SIGTERM/SIGINT (or *shutdown_event*), then stop."""
        event = self._install_signal_handlers(shutdown_event)
        await self.start()
        try:
            await event.wait()
        finally:
            await self.stop()

    # -- Core operations ----------------------------------------------------

    async def send_and_await(
        self,
        token: str,
        kind: CommandKind | str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """See :meth:`CommandCorrelator.send_and_await`."""
        return await self._correlator.send_and_await(token, kind, payload, timeout)

    async def await_pairing(self, token: str, timeout: float | None = None) -> Any:
        """See :meth:`PairingNegotiator.await_pairing`."""
        return await self._negotiator.await_pairing(token, timeout)

    def is_pending(self, token: str, kind: CommandKind | str) -> bool:
        return self._correlator.is_pending(token, kind)

    # -- Device helpers -----------------------------------------------------

    async def request_memory(
        self,
        token: str,
        record_id: str,
        folder_name: str,
        timeout: float | None = None,
    ) -> Any:
        """Ask a device to fetch a recorded folder; return its reply."""
        logger.info("Sending memory command to device %s", token)
        return await self.send_and_await(
            token,
            CommandKind.MEMORY,
            memory_command(record_id, folder_name),
            timeout,
        )

    async def set_streaming(
        self,
        token: str,
        action: str,
        timeout: float | None = None,
    ) -> Any:
        """Switch a device's live stream ``ON``/``OFF``; return its reply.

        Raises:
            ValueError: If *action* is neither ``ON`` nor ``OFF``.
        """
        payload = streaming_command(action)
        logger.info("Sending streaming command to device %s: %s", token, payload["action"])
        return await self.send_and_await(token, CommandKind.STREAMING, payload, timeout)

    async def initiate_pairing(
        self,
        user_id: str,
        timeout: float | None = None,
    ) -> PairingTicket:
        """See :meth:`PairingCoordinator.initiate`."""
        return await self._pairing.initiate(user_id, timeout)

    async def pairing_outcome(self, token: str) -> PairingOutcome:
        """See :meth:`PairingCoordinator.outcome`."""
        return await self._pairing.outcome(token)

    async def pairing_status(self, token: str, user_id: str | None = None) -> PairingState:
        return await self._pairing.status(token, user_id)

    async def is_online(self, token: str) -> bool:
        """Derived liveness of the device with *token*."""
        device = await self._devices.find_by_token(token)
        if device is None:
            return False
        window = timedelta(seconds=self._settings.devices.online_window)
        return device.is_online(self._wall_clock(), window)

    # -- Internal -----------------------------------------------------------

    def _create_mqtt(self, mqtt: MqttPort | None) -> MqttPort:
        """Create the MQTT client, or return the injected one.

        When no explicit ``client_id`` is configured, generates one
        from the service name and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        mqtt_settings = self._settings.mqtt
        if not mqtt_settings.client_id:
            generated_id = f"{self._name}-{uuid.uuid4().hex[:8]}"
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": generated_id},
            )
        return MqttClient(settings=mqtt_settings)

    @staticmethod
    def _install_signal_handlers(
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event
