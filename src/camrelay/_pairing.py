"""Device pairing negotiation.

Pairing binds a freshly generated device token to a physical camera
and to the user who asked for it:

1. :meth:`PairingCoordinator.initiate` allocates a token that no
   existing device uses, registers a waiter for it and returns a
   :class:`PairingTicket` right away.
2. The user configures the camera with the token; the camera announces
   itself on ``{prefix}/{token}/pair``.
3. The router hands the announcement to
   :meth:`PairingNegotiator.deliver`, which completes the waiter exactly
   once.
4. The coordinator's background task creates the device and attaches it
   to the user.  A timeout is only logged: the call that started
   pairing has long since returned.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from camrelay._clock import ClockPort, SystemClock
from camrelay._errors import PairingTimeout, ServiceStopped, UnknownUser
from camrelay._models import Device
from camrelay._pending import PendingEntry, PendingTable
from camrelay._repository import DeviceRepository, UserRepository
from camrelay._tasks import BackgroundTasks
from camrelay._topics import pairing_topic

logger = logging.getLogger(__name__)

_MAX_TOKEN_ATTEMPTS = 32


def generate_device_token() -> str:
    """Return a 16-character lowercase hex device token."""
    return secrets.token_hex(8)


# ---------------------------------------------------------------------------
# Negotiator
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PairingWait:
    """A registered pairing waiter, not yet awaited."""

    token: str
    timeout: float
    entry: PendingEntry


class PairingNegotiator:
    """One-shot waiters keyed by pairing token.

    Args:
        default_timeout: Seconds to wait when no timeout is given.
        clock: Monotonic clock used to stamp deadlines.
    """

    def __init__(
        self,
        *,
        default_timeout: float = 300.0,
        clock: ClockPort | None = None,
    ) -> None:
        self._default_timeout = default_timeout
        self._clock = clock if clock is not None else SystemClock()
        self._table = PendingTable(name="pairing")

    def expect(self, token: str, timeout: float | None = None) -> PairingWait:
        """Register a waiter for *token* without suspending.

        Raises:
            ValueError: On a non-positive *timeout*.
            RequestInFlight: If *token* already has a waiter.
        """
        wait = self._default_timeout if timeout is None else timeout
        if wait <= 0:
            msg = f"timeout must be positive, got {wait}"
            raise ValueError(msg)
        entry = self._table.register(token, self._clock.now() + wait)
        logger.info("Waiting up to %.0fs for device pairing with token %s", wait, token)
        return PairingWait(token=token, timeout=wait, entry=entry)

    async def wait(self, pending: PairingWait) -> Any:
        """Suspend until *pending* is delivered.

        Raises:
            PairingTimeout: If no announcement arrived in time.
        """
        try:
            return await self._table.wait(pending.entry, pending.timeout)
        except TimeoutError:
            raise PairingTimeout(pending.token, pending.timeout) from None

    async def await_pairing(self, token: str, timeout: float | None = None) -> Any:
        """Register a waiter for *token* and suspend until it resolves.

        Returns:
            The device's announcement payload.

        Raises:
            PairingTimeout: If no announcement arrived in time.
            RequestInFlight: If *token* already has a waiter.
        """
        return await self.wait(self.expect(token, timeout))

    def deliver(self, token: str, payload: Any) -> bool:
        """Complete the waiter for *token*.

        Returns:
            True if a waiter was completed; False if none was registered
            (unrequested announcement, or already resolved/expired).
        """
        resolved = self._table.resolve(token, payload)
        if resolved:
            logger.info("Device announced itself for token %s", token)
        else:
            logger.debug("Ignoring pairing announcement for unknown token %s", token)
        return resolved

    def is_waiting(self, token: str) -> bool:
        return token in self._table

    @property
    def waiting_count(self) -> int:
        return len(self._table)

    def shutdown(self) -> int:
        """Fail every outstanding waiter with ServiceStopped."""
        failed = self._table.drain(ServiceStopped("Service is shutting down"))
        if failed:
            logger.info("Abandoned %d pairing wait(s)", failed)
        return failed


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class PairingState(StrEnum):
    PENDING = "pending"
    PAIRED = "paired"
    PAIRED_TO_OTHER = "paired_to_other"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class PairingTicket:
    """What the initiating caller gets back immediately."""

    token: str
    expires_in: float
    topic: str

    @property
    def instructions(self) -> str:
        return f"Configure your device to publish to topic: {self.topic}"


@dataclass(frozen=True, slots=True)
class PairingOutcome:
    """How one pairing attempt ended.

    Exactly one of ``device`` and ``error`` is set.  ``error`` holds the
    :class:`~camrelay._errors.PairingTimeout`, the
    :class:`~camrelay._errors.ServiceStopped` or the persistence failure
    that ended the attempt.
    """

    token: str
    device: Device | None = None
    announcement: Any = None
    error: BaseException | None = None

    @property
    def paired(self) -> bool:
        return self.device is not None


class PairingCoordinator:
    """Runs the pairing flow from token allocation to device creation.

    Args:
        negotiator: Waiter table the router delivers announcements to.
        devices: Device repository (token collision check, creation).
        users: User repository (existence check, attachment).
        tasks: Supervisor for the detached completion tasks.
        topic_prefix: First topic segment, used in the ticket.
        token_factory: Source of candidate tokens.
    """

    def __init__(
        self,
        *,
        negotiator: PairingNegotiator,
        devices: DeviceRepository,
        users: UserRepository,
        tasks: BackgroundTasks,
        topic_prefix: str,
        token_factory: Callable[[], str] = generate_device_token,
    ) -> None:
        self._negotiator = negotiator
        self._devices = devices
        self._users = users
        self._tasks = tasks
        self._topic_prefix = topic_prefix
        self._token_factory = token_factory
        self._in_progress: dict[str, asyncio.Task[PairingOutcome]] = {}

    async def initiate(self, user_id: str, timeout: float | None = None) -> PairingTicket:
        """Start pairing a new device for *user_id*.

        Raises:
            UnknownUser: If the user does not exist.
            RuntimeError: If no unused token could be generated.
        """
        if await self._users.get(user_id) is None:
            msg = f"User '{user_id}' not found"
            raise UnknownUser(msg)

        token = await self._allocate_token()
        pending = self._negotiator.expect(token, timeout)
        self._in_progress[token] = self._tasks.spawn(
            self._complete(user_id, pending),
            name=f"pairing-{token}",
        )
        logger.info("Pairing initiated for user %s with token %s", user_id, token)
        return PairingTicket(
            token=token,
            expires_in=pending.timeout,
            topic=pairing_topic(self._topic_prefix, token),
        )

    async def outcome(self, token: str) -> PairingOutcome:
        """Wait for the attempt on *token* to finish and report how it ended.

        Cancelling the caller does not cancel the attempt.  For a token
        with no attempt in progress, reports the device if one exists.

        Raises:
            ServiceStopped: If the completion task was cancelled at shutdown.
            KeyError: If there is neither an attempt nor a device for *token*.
        """
        task = self._in_progress.get(token)
        if task is not None:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise ServiceStopped("Service is shutting down") from None
                raise
        device = await self._devices.find_by_token(token)
        if device is not None:
            return PairingOutcome(token=token, device=device)
        raise KeyError(token)

    async def status(self, token: str, user_id: str | None = None) -> PairingState:
        """Where pairing for *token* stands.

        With *user_id*, a device that exists but is attached to a
        different user reports ``PAIRED_TO_OTHER``.

        Raises:
            UnknownUser: If *user_id* is given and does not exist.
        """
        if token in self._in_progress or self._negotiator.is_waiting(token):
            return PairingState.PENDING
        device = await self._devices.find_by_token(token)
        if device is None:
            return PairingState.UNKNOWN
        if user_id is None:
            return PairingState.PAIRED
        user = await self._users.get(user_id)
        if user is None:
            msg = f"User '{user_id}' not found"
            raise UnknownUser(msg)
        if device.id in user.device_ids:
            return PairingState.PAIRED
        return PairingState.PAIRED_TO_OTHER

    async def _allocate_token(self) -> str:
        for _ in range(_MAX_TOKEN_ATTEMPTS):
            token = self._token_factory()
            if token in self._in_progress or self._negotiator.is_waiting(token):
                continue
            if await self._devices.find_by_token(token) is None:
                return token
        msg = f"No unused device token after {_MAX_TOKEN_ATTEMPTS} attempts"
        raise RuntimeError(msg)

    async def _complete(self, user_id: str, pending: PairingWait) -> PairingOutcome:
        try:
            return await self._finish(user_id, pending)
        finally:
            self._in_progress.pop(pending.token, None)

    async def _finish(self, user_id: str, pending: PairingWait) -> PairingOutcome:
        token = pending.token
        try:
            announcement = await self._negotiator.wait(pending)
        except PairingTimeout as exc:
            logger.warning("%s", exc)
            return PairingOutcome(token=token, error=exc)
        except ServiceStopped as exc:
            logger.info("Pairing for token %s abandoned at shutdown", token)
            return PairingOutcome(token=token, error=exc)

        logger.debug("Pairing announcement for %s: %r", token, announcement)
        try:
            device = await self._devices.create(token)
            await self._users.attach_device(user_id, device.id)
        except Exception as exc:
            logger.exception("Failed to complete pairing for token %s", token)
            return PairingOutcome(token=token, announcement=announcement, error=exc)
        logger.info("Device paired successfully: %s for user %s", token, user_id)
        return PairingOutcome(token=token, device=device, announcement=announcement)
