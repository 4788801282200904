"""Provider credentials and their observed rate-limit state."""

import asyncio
import os
import time
from dataclasses import dataclass, field

from domain.exceptions import ProviderError, ProviderErrorKind


@dataclass
class RateLimitState:
    """What we have observed about a credential's limits.

    Mutated only while holding the owning credential's lock.
    """

    total_requests: int = 0
    failed_requests: int = 0
    consecutive_rate_limits: int = 0
    last_status_code: int | None = None
    last_error_kind: ProviderErrorKind | None = None
    last_used_at: float | None = None
    cooldown_until: float = 0.0

    def is_cooling_down(self, now: float | None = None) -> bool:
        return (now if now is not None else time.monotonic()) < self.cooldown_until

    def record_success(self, now: float) -> None:
        self.total_requests += 1
        self.consecutive_rate_limits = 0
        self.last_status_code = 200
        self.last_error_kind = None
        self.last_used_at = now

    def record_failure(self, error: ProviderError, now: float, default_cooldown: float = 1.0) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.last_status_code = error.status_code
        self.last_error_kind = error.kind
        self.last_used_at = now
        if error.kind == ProviderErrorKind.RATE_LIMIT:
            self.consecutive_rate_limits += 1
            wait = error.retry_after if error.retry_after is not None else default_cooldown * self.consecutive_rate_limits
            self.cooldown_until = max(self.cooldown_until, now + wait)
        else:
            self.consecutive_rate_limits = 0


@dataclass
class ProviderCredential:
    """One usable provider account.

    Attributes:
        provider_id: Unique id of this credential (e.g. "openai-primary")
        provider_type: Adapter family ("openai", "anthropic", "ollama")
        secret_ref: API key, or "env:VAR_NAME" to read it from the environment
        base_url: Provider API root
        model: Default model for this credential
        priority: Lower values are tried first
        timeout: Provider call timeout in seconds
        stream: Whether the provider is called in streaming mode
    """

    provider_id: str
    provider_type: str
    secret_ref: str = ""
    base_url: str = ""
    model: str = ""
    priority: int = 100
    timeout: float = 120.0
    stream: bool = True
    rate_limit_state: RateLimitState = field(default_factory=RateLimitState)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def resolve_secret(self) -> str:
        """Return the secret value, reading the environment for ``env:`` references."""
        if self.secret_ref.startswith("env:"):
            return os.environ.get(self.secret_ref[4:], "")
        return self.secret_ref
