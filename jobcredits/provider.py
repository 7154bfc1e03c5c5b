"""
Payment provider client.

Only used by the reconciliation sweep to ask the provider what happened to
a checkout session whose completion notification never arrived.
"""

from dataclasses import dataclass
from typing import Optional

import requests

from .config import DEFAULT_PROVIDER_API_BASE
from .logger import StructuredLogger, get_logger
from .retry import RetryError, exponential_backoff, is_transient_error, should_retry_http_status

PAID_STATUSES = ("paid", "no_payment_required")


class ProviderError(Exception):
    """Provider lookup failed (after retries, for transient failures)."""
    pass


class TransientProviderError(ProviderError):
    """Retryable HTTP status from the provider."""
    pass


def _retryable(error: Exception) -> bool:
    if isinstance(error, (TransientProviderError, requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    return is_transient_error(error)


@dataclass(frozen=True)
class ProviderSession:
    """The provider's view of a checkout session."""

    session_id: str
    status: str  # open, complete, expired
    payment_status: str  # paid, unpaid, no_payment_required
    payment_ref: Optional[str] = None
    amount_total: Optional[int] = None  # cents

    @property
    def is_paid(self) -> bool:
        return self.status == "complete" and self.payment_status in PAID_STATUSES

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"


class PaymentProviderClient:
    """Thin REST client for checkout session lookups."""

    def __init__(
        self,
        api_key: Optional[str],
        api_base: str = DEFAULT_PROVIDER_API_BASE,
        timeout: float = 15,
        max_retries: int = 3,
        base_delay: float = 1.0,
        http: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        if not api_key:
            raise ValueError("Missing PAYMENT_PROVIDER_API_KEY. Set env var or pass api_key.")
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._http = http or requests.Session()
        self._logger = logger or get_logger()
        self._http.headers.update({"Authorization": f"Bearer {api_key}"})
        self._get = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(requests.exceptions.RequestException, TransientProviderError),
            should_retry=_retryable,
            on_retry=lambda attempt, e, delay: self._logger.warning(
                "Provider request failed, retrying", attempt=attempt, error=str(e), delay=delay
            ),
        )(self._request)

    def _request(self, url: str) -> requests.Response:
        resp = self._http.get(url, timeout=self._timeout)
        if should_retry_http_status(resp.status_code):
            raise TransientProviderError(f"Provider returned {resp.status_code} for {url}")
        return resp

    def get_checkout_session(self, session_id: str) -> ProviderSession:
        """
        Fetch a checkout session.

        Raises:
            ProviderError: On HTTP errors, exhausted retries or a malformed body
        """
        url = f"{self._api_base}/checkout/sessions/{session_id}"
        try:
            resp = self._get(url)
            resp.raise_for_status()
            data = resp.json()
        except RetryError as e:
            raise ProviderError(f"Provider lookup failed for {session_id}: {e}") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "HTTPError"
            raise ProviderError(f"Provider request failed ({status}) for {session_id}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Provider request error for {session_id}: {e}") from e

        payment_ref = data.get("payment_intent")
        if isinstance(payment_ref, dict):
            payment_ref = payment_ref.get("id")
        return ProviderSession(
            session_id=data.get("id", session_id),
            status=data.get("status", ""),
            payment_status=data.get("payment_status", ""),
            payment_ref=payment_ref,
            amount_total=data.get("amount_total"),
        )
