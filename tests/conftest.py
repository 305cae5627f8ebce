"""
Shared pytest fixtures for the clientrecords tests.

This module provides:
- Sample records fixtures (sample_records, revision)
- OpenTelemetry metrics fixtures (metric_reader, meter)
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime
from typing import Any

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from clientrecords.metrics import reset_meter

# ============================================================================
# Sample data
# ============================================================================


@pytest.fixture
def sample_records() -> list[dict[str, Any]]:
    """A small legacy records array with one of each field shape."""
    return [
        {
            "id": "rec-1",
            "clientName": "Acme Corp",
            "companyName": "Acme",
            "status": "open",
            "createdAt": "2024-04-01T09:00:00.000Z",
        },
        {
            "id": "rec-2",
            "clientName": "Beta LLC",
            "notes": ["first call", "follow up"],
            "paid": True,
            "createdAt": "2024-04-02T09:00:00.000Z",
        },
        {
            "id": "rec-3",
            "clientName": "Gamma",
            "amount": 1250,
            "address": {"city": "Austin", "zip": "78701"},
        },
    ]


@pytest.fixture
def revision() -> datetime:
    """A fixed revision timestamp (2024-05-01T10:00:00.123Z)."""
    return datetime(2024, 5, 1, 10, 0, 0, 123000, tzinfo=UTC)


# ============================================================================
# OpenTelemetry metrics
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """In-memory reader collecting whatever the ``meter`` fixture records."""
    return InMemoryMetricReader()


@pytest.fixture
def meter(metric_reader: InMemoryMetricReader) -> Generator[Any, None, None]:
    """A meter bound to a private MeterProvider (the global one is untouched)."""
    provider = MeterProvider(metric_readers=[metric_reader])
    yield provider.get_meter("clientrecords-tests")
    provider.shutdown()
    reset_meter()
