"""Provider adapter abstraction.

An adapter is the only place that knows a provider's wire format. It
translates a CanonicalRequest into an HTTP request and parses the response
(streamed or whole) into CanonicalDelta events. Adapters never retry; the
RetryFailoverController decides what happens after a ProviderError.

Implementations:
    - OpenAiProviderAdapter (infrastructure/adapters/openai_provider_adapter.py)
    - AnthropicProviderAdapter (infrastructure/adapters/anthropic_provider_adapter.py)
    - OllamaProviderAdapter (infrastructure/adapters/ollama_provider_adapter.py)
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from opentelemetry import trace

from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, ProviderCredential, ProviderRequest

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Markers providers put in 400 bodies when a request is refused on policy grounds
_CONTENT_POLICY_MARKERS = ("content_filter", "content_policy", "content policy", "responsible_ai_policy", "safety")


# =============================================================================
# Error classification
# =============================================================================


def parse_retry_after(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    """Read a Retry-After header (seconds or HTTP date) as seconds."""
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at.timestamp() - time.time())


def _extract_error_message(error_text: str) -> tuple[str, str]:
    """Return (message, provider error type/code) from a provider error body."""
    try:
        error_json = json.loads(error_text)
    except json.JSONDecodeError:
        return error_text[:200], ""
    if not isinstance(error_json, dict):
        return error_text[:200], ""
    error = error_json.get("error", error_json)
    if isinstance(error, str):
        return error[:200], ""
    if not isinstance(error, dict):
        return error_text[:200], ""
    message = str(error.get("message") or error_text[:200])
    code = str(error.get("code") or error.get("type") or "")
    return message, code


def classify_http_error(
    status_code: int,
    error_text: str,
    headers: httpx.Headers | dict[str, str] | None = None,
    provider_id: str | None = None,
) -> ProviderError:
    """Map an HTTP error response to a typed ProviderError.

    Args:
        status_code: HTTP status code
        error_text: Error response body
        headers: Response headers (for Retry-After)
        provider_id: Credential that made the call

    Returns:
        ProviderError with the matching kind
    """
    message, code = _extract_error_message(error_text)
    details = {"provider_error_code": code} if code else {}

    if status_code in (401, 403):
        kind = ProviderErrorKind.AUTH
        message = f"Authentication failed ({status_code}): {message}"
    elif status_code == 429:
        kind = ProviderErrorKind.RATE_LIMIT
        message = f"Rate limit exceeded: {message}"
    elif status_code in (408, 409, 425, 529) or status_code >= 500:
        kind = ProviderErrorKind.TRANSIENT
        message = f"Provider unavailable ({status_code}): {message}"
    elif status_code == 400 and any(marker in f"{code} {message}".lower() for marker in _CONTENT_POLICY_MARKERS):
        kind = ProviderErrorKind.CONTENT_POLICY
        message = f"Request refused by content policy: {message}"
    else:
        kind = ProviderErrorKind.FATAL
        message = f"Provider rejected request ({status_code}): {message}"

    return ProviderError(
        message=message,
        kind=kind,
        provider_id=provider_id,
        status_code=status_code,
        retry_after=parse_retry_after(headers),
        details=details,
    )


# =============================================================================
# SSE helpers
# =============================================================================


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line of a Server-Sent Events stream.

    ``event:``, ``id:`` and comment lines are skipped; payloads carry their
    own type information for every provider we speak to.
    """
    async for line in lines:
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            yield line[5:].strip()


# =============================================================================
# Adapter base class
# =============================================================================


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters.

    Subclasses implement the three pure translation operations; the shared
    ``stream`` method performs the HTTP exchange with httpx and converts
    transport failures into ProviderError before any delta is produced.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Adapter family identifier (matches ProviderCredential.provider_type)."""
        ...

    @abstractmethod
    def translate_request(self, request: CanonicalRequest, credential: ProviderCredential) -> ProviderRequest:
        """Translate a canonical request into the provider's HTTP request."""
        ...

    @abstractmethod
    def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[CanonicalDelta]:
        """Parse a provider's streamed response lines into canonical deltas.

        The returned iterator is finite and not restartable. It always ends
        with a ``done`` delta; provider-reported errors are raised as
        ProviderError.
        """
        ...

    @abstractmethod
    def parse_whole(self, body: dict[str, Any]) -> list[CanonicalDelta]:
        """Parse a complete (non-streamed) response into canonical deltas ending in ``done``."""
        ...

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def stream(
        self,
        request: CanonicalRequest,
        credential: ProviderCredential,
        timeout: float | None = None,
    ) -> AsyncIterator[CanonicalDelta]:
        """Call the provider and yield canonical deltas.

        Args:
            request: The canonical request
            credential: Credential to authenticate with
            timeout: Provider call timeout (defaults to the credential's)

        Yields:
            CanonicalDelta events, the last one being ``done``

        Raises:
            ProviderError: On HTTP, transport or provider-reported errors
        """
        provider_request = self.translate_request(request, credential)
        effective_timeout = timeout or credential.timeout
        client = self._get_client()

        with tracer.start_span(f"{self.provider_type}.stream") as span:
            span.set_attribute("llm.provider", self.provider_type)
            span.set_attribute("llm.provider_id", credential.provider_id)
            span.set_attribute("llm.model", str(provider_request.body.get("model", "")))
            span.set_attribute("llm.stream", provider_request.stream)

            try:
                if provider_request.stream:
                    async with client.stream(
                        "POST",
                        provider_request.url,
                        json=provider_request.body,
                        headers=provider_request.headers,
                        timeout=effective_timeout,
                    ) as response:
                        if response.status_code >= 400:
                            error_content = await response.aread()
                            error_text = error_content.decode("utf-8", errors="replace")
                            logger.warning(f"{self.provider_type} HTTP error: {response.status_code} - {error_text[:200]}")
                            raise classify_http_error(response.status_code, error_text, response.headers, credential.provider_id)

                        async for delta in self.parse_stream(response.aiter_lines()):
                            yield delta
                else:
                    response = await client.post(
                        provider_request.url,
                        json=provider_request.body,
                        headers=provider_request.headers,
                        timeout=effective_timeout,
                    )
                    if response.status_code >= 400:
                        logger.warning(f"{self.provider_type} HTTP error: {response.status_code} - {response.text[:200]}")
                        raise classify_http_error(response.status_code, response.text, response.headers, credential.provider_id)
                    try:
                        body = response.json()
                    except ValueError as e:
                        raise ProviderError(
                            message=f"Invalid JSON response from {self.provider_type}",
                            kind=ProviderErrorKind.FATAL,
                            provider_id=credential.provider_id,
                            error_code="provider_invalid_response",
                        ) from e
                    for delta in self.parse_whole(body):
                        yield delta

            except ProviderError as e:
                if e.provider_id is None:
                    e.provider_id = credential.provider_id
                span.set_attribute("llm.error_kind", e.kind.value)
                raise
            except httpx.TimeoutException as e:
                span.set_attribute("llm.error_kind", ProviderErrorKind.TRANSIENT.value)
                raise ProviderError(
                    message=f"{self.provider_type} request timed out after {effective_timeout}s",
                    kind=ProviderErrorKind.TRANSIENT,
                    provider_id=credential.provider_id,
                    error_code="provider_timeout",
                ) from e
            except httpx.TransportError as e:
                span.set_attribute("llm.error_kind", ProviderErrorKind.TRANSIENT.value)
                raise ProviderError(
                    message=f"Cannot reach {self.provider_type} at {provider_request.url}: {e}",
                    kind=ProviderErrorKind.TRANSIENT,
                    provider_id=credential.provider_id,
                    error_code="provider_connection_error",
                ) from e

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
