"""Tests for camrelay._pairing — pairing negotiation and coordination.

Test Techniques Used:
    - State Transition Testing: waiting → announced / timed out / stopped
    - Specification-based Testing: token format and ticket contents
    - Behavioural Testing: device creation and user attachment
    - Log Assertion: timeout is logged, not raised, in the background
    - Decision Table Testing: pairing status by owner
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator

import pytest

from camrelay._errors import PairingTimeout, RequestInFlight, ServiceStopped, UnknownUser
from camrelay._pairing import (
    PairingCoordinator,
    PairingNegotiator,
    PairingState,
    generate_device_token,
)
from camrelay._repository import InMemoryDeviceRepository, InMemoryUserRepository
from camrelay._tasks import BackgroundTasks
from camrelay.testing import FakeClock

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def negotiator(fake_clock: FakeClock) -> PairingNegotiator:
    return PairingNegotiator(default_timeout=1.0, clock=fake_clock)


@pytest.fixture
def tasks() -> BackgroundTasks:
    return BackgroundTasks()


def _tokens(*values: str) -> Iterator[str]:
    yield from values


@pytest.fixture
def coordinator(
    negotiator: PairingNegotiator,
    device_repo: InMemoryDeviceRepository,
    user_repo: InMemoryUserRepository,
    tasks: BackgroundTasks,
) -> PairingCoordinator:
    return PairingCoordinator(
        negotiator=negotiator,
        devices=device_repo,
        users=user_repo,
        tasks=tasks,
        topic_prefix="api",
    )


# ---------------------------------------------------------------------------
# TestGenerateDeviceToken
# ---------------------------------------------------------------------------


class TestGenerateDeviceToken:
    """Technique: Specification-based Testing."""

    def test_token_is_16_lowercase_hex_chars(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{16}", generate_device_token())

    def test_tokens_differ(self) -> None:
        assert generate_device_token() != generate_device_token()


# ---------------------------------------------------------------------------
# TestPairingNegotiator
# ---------------------------------------------------------------------------


class TestPairingNegotiator:
    """One-shot waiters keyed by token.

    Technique: State Transition Testing.
    """

    async def test_announcement_resolves_waiter(
        self, negotiator: PairingNegotiator
    ) -> None:
        task = asyncio.create_task(negotiator.await_pairing("tok"))
        await asyncio.sleep(0)

        assert negotiator.deliver("tok", {"deviceInfo": "x"}) is True
        assert await task == {"deviceInfo": "x"}
        assert negotiator.is_waiting("tok") is False

    async def test_duplicate_announcement_is_ignored(
        self, negotiator: PairingNegotiator
    ) -> None:
        pending = negotiator.expect("tok")

        assert negotiator.deliver("tok", "first") is True
        assert negotiator.deliver("tok", "second") is False
        assert await negotiator.wait(pending) == "first"

    async def test_announcement_before_wait_is_kept(
        self, negotiator: PairingNegotiator
    ) -> None:
        """expect() registers synchronously, so nothing is missed."""
        pending = negotiator.expect("tok")
        negotiator.deliver("tok", {"early": True})

        assert await negotiator.wait(pending) == {"early": True}

    async def test_unrequested_announcement_returns_false(
        self, negotiator: PairingNegotiator
    ) -> None:
        assert negotiator.deliver("nobody", {}) is False

    async def test_timeout_raises_pairing_timeout(
        self, negotiator: PairingNegotiator
    ) -> None:
        with pytest.raises(PairingTimeout) as exc_info:
            await negotiator.await_pairing("tok", timeout=0.02)

        assert exc_info.value.token == "tok"
        assert negotiator.waiting_count == 0

    async def test_second_waiter_for_same_token_rejected(
        self, negotiator: PairingNegotiator
    ) -> None:
        negotiator.expect("tok")

        with pytest.raises(RequestInFlight):
            negotiator.expect("tok")

    async def test_non_positive_timeout_rejected(
        self, negotiator: PairingNegotiator
    ) -> None:
        with pytest.raises(ValueError):
            negotiator.expect("tok", timeout=0)

    async def test_shutdown_fails_waiters(self, negotiator: PairingNegotiator) -> None:
        task = asyncio.create_task(negotiator.await_pairing("tok"))
        await asyncio.sleep(0)

        assert negotiator.shutdown() == 1
        with pytest.raises(ServiceStopped):
            await task


# ---------------------------------------------------------------------------
# TestPairingCoordinator
# ---------------------------------------------------------------------------


class TestPairingCoordinator:
    """Token allocation through device creation.

    Technique: Behavioural Testing.
    """

    async def test_initiate_returns_ticket_immediately(
        self,
        coordinator: PairingCoordinator,
        user_repo: InMemoryUserRepository,
        negotiator: PairingNegotiator,
        tasks: BackgroundTasks,
    ) -> None:
        user = await user_repo.create("alice")

        ticket = await coordinator.initiate(user.id)

        assert re.fullmatch(r"[0-9a-f]{16}", ticket.token)
        assert ticket.expires_in == 1.0
        assert ticket.topic == f"api/{ticket.token}/pair"
        assert ticket.topic in ticket.instructions
        assert negotiator.is_waiting(ticket.token)
        assert await coordinator.status(ticket.token) is PairingState.PENDING
        negotiator.shutdown()
        await tasks.join()

    async def test_announcement_creates_device_for_user(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        device_repo: InMemoryDeviceRepository,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id)

        negotiator.deliver(ticket.token, {"deviceInfo": "x"})
        await tasks.join()

        device = await device_repo.find_by_token(ticket.token)
        assert device is not None
        assert device.is_paired is True
        assert user.device_ids == [device.id]
        assert await coordinator.status(ticket.token) is PairingState.PAIRED

    async def test_unknown_user_rejected(self, coordinator: PairingCoordinator) -> None:
        with pytest.raises(UnknownUser):
            await coordinator.initiate("ghost")

    async def test_timeout_is_logged_and_nothing_created(
        self,
        coordinator: PairingCoordinator,
        device_repo: InMemoryDeviceRepository,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        user = await user_repo.create("alice")

        with caplog.at_level(logging.WARNING, logger="camrelay._pairing"):
            ticket = await coordinator.initiate(user.id, timeout=0.02)
            await tasks.join()

        assert "timed out" in caplog.text
        assert device_repo.all() == []
        assert await coordinator.status(ticket.token) is PairingState.UNKNOWN

    async def test_skips_tokens_already_in_use(
        self,
        negotiator: PairingNegotiator,
        device_repo: InMemoryDeviceRepository,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        await device_repo.create("taken")
        candidates = _tokens("taken", "fresh")
        coordinator = PairingCoordinator(
            negotiator=negotiator,
            devices=device_repo,
            users=user_repo,
            tasks=tasks,
            topic_prefix="api",
            token_factory=lambda: next(candidates),
        )
        user = await user_repo.create("bob")

        ticket = await coordinator.initiate(user.id)

        assert ticket.token == "fresh"
        negotiator.shutdown()
        await tasks.join()

    async def test_gives_up_when_every_token_collides(
        self,
        negotiator: PairingNegotiator,
        device_repo: InMemoryDeviceRepository,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        await device_repo.create("taken")
        coordinator = PairingCoordinator(
            negotiator=negotiator,
            devices=device_repo,
            users=user_repo,
            tasks=tasks,
            topic_prefix="api",
            token_factory=lambda: "taken",
        )
        user = await user_repo.create("bob")

        with pytest.raises(RuntimeError, match="No unused device token"):
            await coordinator.initiate(user.id)

    async def test_status_of_unknown_token(self, coordinator: PairingCoordinator) -> None:
        assert await coordinator.status("never-issued") is PairingState.UNKNOWN


# ---------------------------------------------------------------------------
# TestPairingOutcome
# ---------------------------------------------------------------------------


class TestPairingOutcome:
    """How a pairing attempt ended, as seen by a caller that waits for it.

    Technique: State Transition Testing.
    """

    async def test_paired_outcome_carries_device_and_announcement(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id)
        waiter = asyncio.create_task(coordinator.outcome(ticket.token))
        await asyncio.sleep(0)

        negotiator.deliver(ticket.token, {"deviceInfo": "x"})
        outcome = await waiter

        assert outcome.paired is True
        assert outcome.device is not None
        assert outcome.device.token == ticket.token
        assert outcome.announcement == {"deviceInfo": "x"}
        assert outcome.error is None
        assert user.device_ids == [outcome.device.id]

    async def test_timed_out_outcome_carries_the_error(
        self,
        coordinator: PairingCoordinator,
        device_repo: InMemoryDeviceRepository,
        user_repo: InMemoryUserRepository,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id, timeout=0.02)

        outcome = await coordinator.outcome(ticket.token)

        assert outcome.paired is False
        assert isinstance(outcome.error, PairingTimeout)
        assert device_repo.all() == []

    async def test_cancelled_caller_leaves_the_attempt_running(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id)
        waiter = asyncio.create_task(coordinator.outcome(ticket.token))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert negotiator.is_waiting(ticket.token)
        negotiator.deliver(ticket.token, {})
        await tasks.join()
        assert await coordinator.status(ticket.token) is PairingState.PAIRED

    async def test_cancelled_attempt_reports_service_stopped(
        self,
        coordinator: PairingCoordinator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id)
        waiter = asyncio.create_task(coordinator.outcome(ticket.token))
        await asyncio.sleep(0)

        await tasks.cancel_all()

        with pytest.raises(ServiceStopped):
            await waiter

    async def test_finished_attempt_reports_existing_device(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        user = await user_repo.create("alice")
        ticket = await coordinator.initiate(user.id)
        negotiator.deliver(ticket.token, {})
        await tasks.join()

        outcome = await coordinator.outcome(ticket.token)

        assert outcome.paired is True
        assert outcome.announcement is None

    async def test_unknown_token_raises_key_error(
        self, coordinator: PairingCoordinator
    ) -> None:
        with pytest.raises(KeyError):
            await coordinator.outcome("never-issued")


# ---------------------------------------------------------------------------
# TestPairingStatusOwner
# ---------------------------------------------------------------------------


class TestPairingStatusOwner:
    """Pairing status as seen by a specific user.

    Technique: Decision Table Testing.
    """

    async def _paired_to(
        self,
        owner_id: str,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        tasks: BackgroundTasks,
    ) -> str:
        ticket = await coordinator.initiate(owner_id)
        negotiator.deliver(ticket.token, {})
        await tasks.join()
        return ticket.token

    async def test_owner_sees_paired(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        alice = await user_repo.create("alice")
        token = await self._paired_to(alice.id, coordinator, negotiator, tasks)

        assert await coordinator.status(token, alice.id) is PairingState.PAIRED

    async def test_other_user_sees_paired_to_other(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        alice = await user_repo.create("alice")
        token = await self._paired_to(alice.id, coordinator, negotiator, tasks)
        bob = await user_repo.create("bob")

        assert await coordinator.status(token, bob.id) is PairingState.PAIRED_TO_OTHER
        assert await coordinator.status(token) is PairingState.PAIRED

    async def test_pending_and_unknown_ignore_the_user(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        alice = await user_repo.create("alice")
        bob = await user_repo.create("bob")
        ticket = await coordinator.initiate(alice.id)

        assert await coordinator.status(ticket.token, bob.id) is PairingState.PENDING
        assert await coordinator.status("never-issued", bob.id) is PairingState.UNKNOWN
        negotiator.shutdown()
        await tasks.join()

    async def test_unknown_user_rejected(
        self,
        coordinator: PairingCoordinator,
        negotiator: PairingNegotiator,
        user_repo: InMemoryUserRepository,
        tasks: BackgroundTasks,
    ) -> None:
        alice = await user_repo.create("alice")
        token = await self._paired_to(alice.id, coordinator, negotiator, tasks)

        with pytest.raises(UnknownUser):
            await coordinator.status(token, "ghost")
