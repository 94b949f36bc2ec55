"""Fixtures shared by the unit and integration suites."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
import structlog


@pytest.fixture(autouse=True)
def _uncached_loggers(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep module loggers uncached so ``structlog.testing.capture_logs`` sees every event."""
    configure = structlog.configure

    def configure_uncached(**kwargs: Any) -> None:
        kwargs["cache_logger_on_first_use"] = False
        configure(**kwargs)

    monkeypatch.setattr(structlog, "configure", configure_uncached)
    yield
    structlog.reset_defaults()
