"""Provider adapter abstraction."""

from .provider_adapter import ProviderAdapter, classify_http_error, iter_sse_data, parse_retry_after

__all__ = [
    "ProviderAdapter",
    "classify_http_error",
    "iter_sse_data",
    "parse_retry_after",
]
