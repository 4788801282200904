"""Retry and failover around provider adapter calls.

Policy:
- transient / rate_limit errors retry the same credential with exponential
  backoff and jitter, up to ``max_attempts``
- auth / fatal errors, or exhausted retries, fail over to the next
  credential/adapter pair
- content_policy errors surface immediately (another provider is not a
  way around a refusal)
- once any delta has been yielded downstream the call is never retried; a
  mid-stream failure becomes a terminal ``error`` delta instead

Every call updates the credential's rate-limit state under its lock.
"""

import asyncio
import dataclasses
import logging
import random
import time
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field

from application.providers import ProviderAdapter
from domain.exceptions import RETRYABLE_PROVIDER_ERRORS, ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, ProviderCredential
from observability import provider_errors, provider_failovers, provider_requests, provider_retries, provider_time_to_first_delta

from .cancellation import CancellationToken

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff policy.

    Attributes:
        max_attempts: Attempts per credential (1 = no retry)
        initial_delay: Delay before the first retry, in seconds
        multiplier: Growth factor between retries
        max_delay: Upper bound for any single delay
        jitter_ratio: Random spread applied to each delay (0.2 = ±20%)
        retryable_kinds: Error kinds retried on the same credential
        default_cooldown: Cooldown applied after a 429 without Retry-After
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter_ratio: float = 0.2
    retryable_kinds: frozenset[ProviderErrorKind] = field(default=RETRYABLE_PROVIDER_ERRORS)
    default_cooldown: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

    def compute_delay(self, retry_number: int, retry_after: float | None = None, random_fn: Callable[[], float] = random.random) -> float:
        """Delay before retry ``retry_number`` (1-based).

        A provider supplied Retry-After is a floor, not a suggestion.
        """
        base_delay = min(self.initial_delay * (self.multiplier ** (retry_number - 1)), self.max_delay)
        if self.jitter_ratio:
            jitter = ((random_fn() * 2.0) - 1.0) * base_delay * self.jitter_ratio
            base_delay = max(0.0, min(self.max_delay, base_delay + jitter))
        if retry_after is not None:
            return max(base_delay, retry_after)
        return base_delay


@dataclass
class FailoverTarget:
    """A credential paired with the adapter that speaks its API.

    Attributes:
        credential: The provider credential
        adapter: Adapter for the credential's provider family
        model: Model override for this target (None uses the credential's)
    """

    credential: ProviderCredential
    adapter: ProviderAdapter
    model: str | None = None


class RetryFailoverController:
    """Wraps a provider call with retry and failover."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        random_fn: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._random = random_fn
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def stream(
        self,
        request: CanonicalRequest,
        targets: list[FailoverTarget],
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[CanonicalDelta]:
        """Stream canonical deltas from the first target that works.

        Args:
            request: Canonical request
            targets: Primary first, then fallbacks
            cancel_token: Checked before each attempt and during backoff
            timeout: Provider call timeout override

        Yields:
            Deltas from a single successful provider call, ending in
            ``done``, or in ``error`` if that call failed mid-stream

        Raises:
            ProviderError: When every target failed before producing output
        """
        if not targets:
            raise ProviderError("No provider credentials configured", kind=ProviderErrorKind.FATAL, error_code="provider_not_configured")

        last_error: ProviderError | None = None
        for position, target in enumerate(self._order_targets(targets)):
            credential = target.credential
            if position > 0:
                provider_failovers.add(1, {"provider_id": credential.provider_id})
                log.warning(f"🔀 Failing over to provider '{credential.provider_id}' after: {last_error}")

            await self._wait_for_cooldown(credential, cancel_token)
            target_request = dataclasses.replace(request, model=target.model) if target.model else request

            for attempt in range(1, self._policy.max_attempts + 1):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                delivered = False
                completed = False
                error: ProviderError | None = None
                started = self._clock()
                provider_requests.add(1, {"provider_id": credential.provider_id, "provider_type": credential.provider_type})
                try:
                    async with aclosing(target.adapter.stream(target_request, credential, timeout)) as deltas:
                        async for delta in deltas:
                            if not delivered:
                                provider_time_to_first_delta.record((self._clock() - started) * 1000, {"provider_id": credential.provider_id})
                            delivered = True
                            yield delta
                    completed = True
                except ProviderError as e:
                    error = e
                finally:
                    # Calls abandoned by the consumer are not recorded
                    if completed or error is not None:
                        await self._record_outcome(credential, error)

                if error is None:
                    return

                provider_errors.add(1, {"provider_id": credential.provider_id, "kind": error.kind.value})
                if delivered:
                    # Stream already partially consumed downstream: never retry
                    log.warning(f"Provider '{credential.provider_id}' failed mid-stream: {error}")
                    yield CanonicalDelta.error(error.to_dict(), partial=True)
                    return

                last_error = error
                if error.kind == ProviderErrorKind.CONTENT_POLICY:
                    raise error
                if error.kind not in self._policy.retryable_kinds or attempt == self._policy.max_attempts:
                    break

                delay = self._policy.compute_delay(attempt, error.retry_after, self._random)
                provider_retries.add(1, {"provider_id": credential.provider_id, "kind": error.kind.value})
                log.info(f"🔁 Retrying provider '{credential.provider_id}' in {delay:.2f}s (attempt {attempt + 1}/{self._policy.max_attempts}): {error.message}")
                if cancel_token is not None:
                    await cancel_token.sleep(delay)
                else:
                    await asyncio.sleep(delay)

        if last_error is None:
            raise ProviderError("No provider call was attempted", kind=ProviderErrorKind.FATAL, error_code="provider_not_configured")
        raise last_error

    def _order_targets(self, targets: list[FailoverTarget]) -> list[FailoverTarget]:
        """Keep configured order, moving credentials in cooldown behind the others."""
        now = self._clock()
        ready = [target for target in targets if not target.credential.rate_limit_state.is_cooling_down(now)]
        cooling = [target for target in targets if target.credential.rate_limit_state.is_cooling_down(now)]
        if cooling and ready:
            log.debug(f"Deferring providers in cooldown: {[target.credential.provider_id for target in cooling]}")
        return ready + cooling

    async def _wait_for_cooldown(self, credential: ProviderCredential, cancel_token: CancellationToken | None) -> None:
        remaining = credential.rate_limit_state.cooldown_until - self._clock()
        if remaining <= 0:
            return
        delay = min(remaining, self._policy.max_delay)
        log.info(f"⏳ Provider '{credential.provider_id}' is rate limited, waiting {delay:.2f}s")
        if cancel_token is not None:
            await cancel_token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    async def _record_outcome(self, credential: ProviderCredential, error: ProviderError | None) -> None:
        async with credential.lock:
            now = self._clock()
            if error is None:
                credential.rate_limit_state.record_success(now)
            else:
                credential.rate_limit_state.record_failure(error, now, self._policy.default_cooldown)
