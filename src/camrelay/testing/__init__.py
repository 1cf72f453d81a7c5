"""Public test-support utilities for camrelay.

Re-exports test doubles and factories so that consumer test suites
can import everything from a single ``camrelay.testing`` namespace
instead of reaching into private modules.

Provided symbols:

- :class:`ServiceHarness` — CameraService wired with test doubles.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic monotonic clock.
- :class:`FakeWallClock` — deterministic wall clock for liveness tests.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
"""

from camrelay._mqtt import MockMqttClient, NullMqttClient
from camrelay.testing._clock import FakeClock, FakeWallClock
from camrelay.testing._harness import ServiceHarness
from camrelay.testing._settings import make_settings

__all__ = [
    "FakeClock",
    "FakeWallClock",
    "MockMqttClient",
    "NullMqttClient",
    "ServiceHarness",
    "make_settings",
]
