"""Pytest configuration and shared fixtures."""

import pytest

# The camrelay testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:camrelay``) and load it explicitly here
# so the camrelay import chain is measured by pytest-cov.
pytest_plugins = ["camrelay.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may require external services)"
    )
