"""Unit tests for RetryFailoverController and RetryPolicy.

Tests cover:
- Backoff computation, jitter bounds and Retry-After floors
- Retrying transient and rate-limit errors on the same credential
- Failing over on auth/fatal errors and exhausted retries
- Content policy errors surfacing without failover
- Mid-stream failures becoming partial error deltas, never retried
- Cooldown-aware target ordering and rate-limit bookkeeping
- Cancellation between attempts and streams abandoned by the consumer
"""

import asyncio

import pytest

from application.services import CancellationToken, FailoverTarget, RetryFailoverController, RetryPolicy
from domain.exceptions import OrchestratorError, OrchestratorErrorKind, ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, DeltaType, Message
from tests.fixtures.factories import CredentialFactory, ScriptedProviderAdapter, provider_error, text_reply


@pytest.fixture
def request_():
    return CanonicalRequest(messages=[Message.create_user_message("conv-1", "hi")])


async def drain(controller: RetryFailoverController, request: CanonicalRequest, targets: list[FailoverTarget], token: CancellationToken | None = None):
    return [delta async for delta in controller.stream(request, targets, token)]


class TestRetryPolicy:
    """Test backoff computation."""

    def test_exponential_growth_capped(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=8.0, jitter_ratio=0.0)

        assert [policy.compute_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=8.0, jitter_ratio=0.5)

        assert policy.compute_delay(2, random_fn=lambda: 0.0) == 1.0
        assert policy.compute_delay(2, random_fn=lambda: 1.0) == 3.0
        assert policy.compute_delay(4, random_fn=lambda: 1.0) == 8.0

    def test_retry_after_is_a_floor(self):
        policy = RetryPolicy(initial_delay=0.5, max_delay=8.0, jitter_ratio=0.0)

        assert policy.compute_delay(1, retry_after=5.0) == 5.0
        assert policy.compute_delay(1, retry_after=0.1) == 0.5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay": -1.0},
            {"multiplier": 0.5},
            {"initial_delay": 2.0, "max_delay": 1.0},
            {"jitter_ratio": 1.5},
        ],
    )
    def test_invalid_policies_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetrySameCredential:
    """Test retries on the primary credential."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, retry_controller, make_targets, request_):
        adapter = ScriptedProviderAdapter(text_reply("Hello"))
        targets = make_targets(adapter)

        deltas = await drain(retry_controller, request_, targets)

        assert [delta.type for delta in deltas] == [DeltaType.TEXT, DeltaType.USAGE, DeltaType.DONE]
        assert adapter.call_count == 1
        assert targets[0].credential.rate_limit_state.total_requests == 1

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self, retry_controller, make_targets, request_):
        """Test that a 429 is retried on the same credential and recorded."""
        adapter = ScriptedProviderAdapter(provider_error(ProviderErrorKind.RATE_LIMIT, retry_after=0.0, status_code=429), text_reply("ok"))
        targets = make_targets(adapter)

        deltas = await drain(retry_controller, request_, targets)

        assert deltas[-1].type == DeltaType.DONE
        assert adapter.call_count == 2
        state = targets[0].credential.rate_limit_state
        assert state.total_requests == 2
        assert state.failed_requests == 1
        assert state.consecutive_rate_limits == 0

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_then_fail_over(self, retry_controller, make_targets, request_):
        primary = ScriptedProviderAdapter(*(provider_error(ProviderErrorKind.TRANSIENT) for _ in range(3)))
        fallback = ScriptedProviderAdapter(text_reply("from fallback"), provider_type="anthropic")

        deltas = await drain(retry_controller, request_, make_targets(primary, fallback))

        assert primary.call_count == 3
        assert fallback.call_count == 1
        assert deltas[0].payload == {"text": "from fallback"}


class TestFailover:
    """Test switching credentials."""

    @pytest.mark.asyncio
    async def test_auth_error_fails_over_immediately(self, retry_controller, make_targets, request_):
        primary = ScriptedProviderAdapter(provider_error(ProviderErrorKind.AUTH, status_code=401))
        fallback = ScriptedProviderAdapter(text_reply("ok"), provider_type="anthropic")

        deltas = await drain(retry_controller, request_, make_targets(primary, fallback))

        assert primary.call_count == 1
        assert fallback.call_count == 1
        assert deltas[-1].type == DeltaType.DONE

    @pytest.mark.asyncio
    async def test_content_policy_surfaces_without_failover(self, retry_controller, make_targets, request_):
        primary = ScriptedProviderAdapter(provider_error(ProviderErrorKind.CONTENT_POLICY, status_code=400))
        fallback = ScriptedProviderAdapter(text_reply("should not run"), provider_type="anthropic")

        with pytest.raises(ProviderError) as exc_info:
            await drain(retry_controller, request_, make_targets(primary, fallback))

        assert exc_info.value.kind == ProviderErrorKind.CONTENT_POLICY
        assert fallback.call_count == 0

    @pytest.mark.asyncio
    async def test_all_targets_failing_raises_last_error(self, retry_controller, make_targets, request_):
        primary = ScriptedProviderAdapter(provider_error(ProviderErrorKind.FATAL, provider_id="openai-primary"))
        fallback = ScriptedProviderAdapter(provider_error(ProviderErrorKind.AUTH, provider_id="anthropic-fallback"), provider_type="anthropic")

        with pytest.raises(ProviderError) as exc_info:
            await drain(retry_controller, request_, make_targets(primary, fallback))

        assert exc_info.value.kind == ProviderErrorKind.AUTH
        assert exc_info.value.provider_id == "anthropic-fallback"

    @pytest.mark.asyncio
    async def test_no_targets(self, retry_controller, request_):
        with pytest.raises(ProviderError) as exc_info:
            await drain(retry_controller, request_, [])

        assert exc_info.value.error_code == "provider_not_configured"

    @pytest.mark.asyncio
    async def test_target_model_override(self, retry_controller, credential, request_):
        adapter = ScriptedProviderAdapter(text_reply("ok"))

        await drain(retry_controller, request_, [FailoverTarget(credential=credential, adapter=adapter, model="gpt-4.1")])

        sent_request, _ = adapter.calls[0]
        assert sent_request.model == "gpt-4.1"
        assert request_.model is None

    @pytest.mark.asyncio
    async def test_cooling_down_credentials_tried_last(self, fast_retry_policy, request_):
        """Test that a credential in cooldown is moved behind ready ones."""
        limited = CredentialFactory.create(provider_id="limited", priority=0)
        limited.rate_limit_state.cooldown_until = 2000.0
        ready = CredentialFactory.create(provider_id="ready", priority=10)
        limited_adapter = ScriptedProviderAdapter()
        ready_adapter = ScriptedProviderAdapter(text_reply("ok"))
        controller = RetryFailoverController(fast_retry_policy, clock=lambda: 1000.0)

        await drain(controller, request_, [FailoverTarget(limited, limited_adapter), FailoverTarget(ready, ready_adapter)])

        assert ready_adapter.call_count == 1
        assert limited_adapter.call_count == 0


class TestMidStreamFailure:
    """Test failures after output was delivered."""

    @pytest.mark.asyncio
    async def test_partial_stream_becomes_error_delta(self, retry_controller, make_targets, request_):
        primary = ScriptedProviderAdapter([CanonicalDelta.text("Hal"), provider_error(ProviderErrorKind.TRANSIENT)])
        fallback = ScriptedProviderAdapter(text_reply("never"), provider_type="anthropic")

        deltas = await drain(retry_controller, request_, make_targets(primary, fallback))

        assert [delta.type for delta in deltas] == [DeltaType.TEXT, DeltaType.ERROR]
        assert deltas[-1].payload["partial"] is True
        assert deltas[-1].payload["error"]["kind"] == "transient"
        assert primary.call_count == 1
        assert fallback.call_count == 0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_attempt(self, retry_controller, make_targets, request_):
        token = CancellationToken()
        token.cancel("user")
        adapter = ScriptedProviderAdapter(text_reply("never"))

        with pytest.raises(OrchestratorError) as exc_info:
            await drain(retry_controller, request_, make_targets(adapter), token)

        assert exc_info.value.kind == OrchestratorErrorKind.CANCELLED
        assert adapter.call_count == 0

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, make_targets, request_):
        """Test that cancellation wakes the retry sleep early."""
        policy = RetryPolicy(max_attempts=2, initial_delay=30.0, max_delay=30.0, jitter_ratio=0.0)
        controller = RetryFailoverController(policy)
        token = CancellationToken()
        adapter = ScriptedProviderAdapter(provider_error(ProviderErrorKind.TRANSIENT), text_reply("never"))

        asyncio.get_running_loop().call_later(0.01, token.cancel, "user")
        with pytest.raises(OrchestratorError):
            await asyncio.wait_for(drain(controller, request_, make_targets(adapter), token), timeout=5.0)

        assert adapter.call_count == 1

    @pytest.mark.asyncio
    async def test_abandoned_stream_not_recorded(self, retry_controller, make_targets, request_):
        """Test that a stream closed by the consumer leaves the rate-limit state untouched."""
        targets = make_targets(ScriptedProviderAdapter(text_reply("Hello", " world")))
        state = targets[0].credential.rate_limit_state
        state.consecutive_rate_limits = 2

        deltas = retry_controller.stream(request_, targets)
        first = await deltas.__anext__()
        await deltas.aclose()

        assert first.type == DeltaType.TEXT
        assert state.total_requests == 0
        assert state.consecutive_rate_limits == 2
