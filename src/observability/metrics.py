"""Business metrics for the Agent Gateway service.

Defines OpenTelemetry metrics for:
- Provider calls: requests, latency, errors, retries, failovers
- Tool calls: executions, latency, errors, discovery
- Turns: lifecycle outcomes and duration
- Streaming: heartbeats and backpressure
"""

from opentelemetry import metrics

meter = metrics.get_meter(__name__)

# =============================================================================
# PROVIDER METRICS
# =============================================================================

provider_requests = meter.create_counter(
    name="agent_gateway.provider.requests",
    description="Total provider calls attempted",
    unit="1",
)

provider_errors = meter.create_counter(
    name="agent_gateway.provider.errors",
    description="Total provider call failures by kind",
    unit="1",
)

provider_retries = meter.create_counter(
    name="agent_gateway.provider.retries",
    description="Total retries of the same provider credential",
    unit="1",
)

provider_failovers = meter.create_counter(
    name="agent_gateway.provider.failovers",
    description="Total switches to a fallback credential",
    unit="1",
)

provider_time_to_first_delta = meter.create_histogram(
    name="agent_gateway.provider.time_to_first_delta",
    description="Time from request to first streamed delta",
    unit="ms",
)

# =============================================================================
# TOOL METRICS
# =============================================================================

tool_calls = meter.create_counter(
    name="agent_gateway.tool.calls",
    description="Total tool invocations",
    unit="1",
)

tool_errors = meter.create_counter(
    name="agent_gateway.tool.errors",
    description="Total tool invocation failures by kind",
    unit="1",
)

tool_execution_time = meter.create_histogram(
    name="agent_gateway.tool.execution_time",
    description="Tool execution duration",
    unit="ms",
)

tool_discovery_refreshes = meter.create_counter(
    name="agent_gateway.tool.discovery_refreshes",
    description="Total remote tool server discovery attempts",
    unit="1",
)

tool_discovery_failures = meter.create_counter(
    name="agent_gateway.tool.discovery_failures",
    description="Total failed remote tool server discoveries",
    unit="1",
)

# =============================================================================
# TURN METRICS
# =============================================================================

turns_started = meter.create_counter(
    name="agent_gateway.turns.started",
    description="Total turns started",
    unit="1",
)

turns_completed = meter.create_counter(
    name="agent_gateway.turns.completed",
    description="Total turns that reached a terminal state, by state",
    unit="1",
)

turn_duration = meter.create_histogram(
    name="agent_gateway.turn.duration",
    description="Wall-clock duration of turns",
    unit="ms",
)

# =============================================================================
# STREAM METRICS
# =============================================================================

stream_heartbeats = meter.create_counter(
    name="agent_gateway.stream.heartbeats",
    description="Total heartbeat markers enqueued",
    unit="1",
)

stream_heartbeats_dropped = meter.create_counter(
    name="agent_gateway.stream.heartbeats_dropped",
    description="Heartbeat markers dropped because the queue was full",
    unit="1",
)

stream_backpressure_waits = meter.create_counter(
    name="agent_gateway.stream.backpressure_waits",
    description="Times a producer waited for queue space",
    unit="1",
)
