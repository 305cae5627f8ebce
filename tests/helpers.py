"""
Helpers shared by the unit and integration tests.
"""

from __future__ import annotations

from typing import Any

from opentelemetry.sdk.metrics.export import InMemoryMetricReader


def get_counter_value(reader: InMemoryMetricReader, metric_name: str) -> int:
    """
    Sum all data points of a counter.

    Args:
        reader: Reader attached to the meter under test.
        metric_name: Name of the counter.

    Returns:
        Total value, or 0 if the counter has not been recorded.
    """
    metrics_data = reader.get_metrics_data()
    if not metrics_data or not metrics_data.resource_metrics:
        return 0

    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return sum(dp.value for dp in metric.data.data_points)
    return 0


def get_counter_attributes(reader: InMemoryMetricReader, metric_name: str) -> list[dict[str, Any]]:
    """Attributes of every data point of a counter."""
    metrics_data = reader.get_metrics_data()
    if not metrics_data or not metrics_data.resource_metrics:
        return []

    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return [dict(dp.attributes) for dp in metric.data.data_points]
    return []
