"""Observability utilities and metrics."""

from .metrics import (provider_errors, provider_failovers, provider_requests, provider_retries, provider_time_to_first_delta, stream_backpressure_waits, stream_heartbeats, stream_heartbeats_dropped,
                      tool_calls, tool_discovery_failures, tool_discovery_refreshes, tool_errors, tool_execution_time, turn_duration, turns_completed, turns_started)

__all__ = [
    # Provider metrics
    "provider_requests",
    "provider_errors",
    "provider_retries",
    "provider_failovers",
    "provider_time_to_first_delta",
    # Tool metrics
    "tool_calls",
    "tool_errors",
    "tool_execution_time",
    "tool_discovery_refreshes",
    "tool_discovery_failures",
    # Turn metrics
    "turns_started",
    "turns_completed",
    "turn_duration",
    # Stream metrics
    "stream_heartbeats",
    "stream_heartbeats_dropped",
    "stream_backpressure_waits",
]
