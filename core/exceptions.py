"""Shared exception types for core market-data logic."""

from typing import Optional


class ProviderError(RuntimeError):
    """Raised by a provider adapter when one request fails.

    `retryable` is True for timeouts, connection errors, HTTP 429/5xx and
    malformed payloads. Client errors such as a bad key or unknown symbol are
    not retried.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code

    @property
    def symbol_miss(self) -> bool:
        """A rejection of this symbol only; the provider itself answered."""
        return not self.retryable and self.status_code not in (401, 403, 429)
