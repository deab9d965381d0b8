"""
Payment processor integration (Stripe ACH charges and Issuing virtual cards).
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional
import httpx
import logging
from app.core.config import settings
from app.core.exceptions import PaymentProviderError, TransientPaymentError, PermanentPaymentError

logger = logging.getLogger(__name__)


class PaymentProcessor(ABC):
    """Interface consumed by the payment orchestrator and settlement trigger."""

    @abstractmethod
    def charge(self, amount_cents: int, source_token: str, metadata: Dict[str, str],
               idempotency_key: str) -> str:
        """Charge a payment source. Returns the provider charge id."""

    @abstractmethod
    def create_merchant_settlement(self, amount_cents: int, metadata: Dict[str, str],
                                   idempotency_key: str) -> str:
        """Create one funded merchant-directed payment. Returns its id."""


class StripePaymentProcessor(PaymentProcessor):
    """Stripe REST API client using form-encoded requests."""

    def __init__(self, api_key: str = None, api_url: str = None, currency: str = None,
                 cardholder_id: str = None, timeout: float = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.api_url = (api_url or settings.STRIPE_API_URL).rstrip("/")
        self.currency = currency or settings.SETTLEMENT_CURRENCY
        self.cardholder_id = cardholder_id or settings.STRIPE_CARDHOLDER_ID
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    def charge(self, amount_cents: int, source_token: str, metadata: Dict[str, str],
               idempotency_key: str) -> str:
        data = {
            "amount": str(amount_cents),
            "currency": self.currency,
            "source": source_token,
        }
        data.update(_metadata_fields(metadata))
        result = self._post("/charges", data, idempotency_key)
        logger.info(f"Stripe charge {result['id']} created for {amount_cents} cents")
        return result["id"]

    def create_merchant_settlement(self, amount_cents: int, metadata: Dict[str, str],
                                   idempotency_key: str) -> str:
        if not self.cardholder_id:
            raise PermanentPaymentError("STRIPE_CARDHOLDER_ID is not configured", code="configuration")
        data = {
            "cardholder": self.cardholder_id,
            "currency": self.currency,
            "type": "virtual",
            "status": "active",
            "spending_controls[spending_limits][0][amount]": str(amount_cents),
            "spending_controls[spending_limits][0][interval]": "all_time",
        }
        data.update(_metadata_fields(metadata))
        result = self._post("/issuing/cards", data, idempotency_key)
        logger.info(f"Stripe virtual card {result['id']} created for {amount_cents} cents")
        return result["id"]

    def _post(self, path: str, data: Dict[str, str], idempotency_key: Optional[str]) -> dict:
        if not self.api_key:
            raise PermanentPaymentError("STRIPE_SECRET_KEY is not configured", code="configuration")
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            response = httpx.post(
                f"{self.api_url}{path}",
                data=data,
                headers=headers,
                auth=(self.api_key, ""),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise _map_stripe_error(e.response)
        except httpx.HTTPError as e:
            # Network errors and timeouts
            logger.warning(f"Stripe network error on {path}: {e}")
            raise TransientPaymentError(f"Payment provider unreachable: {e}", code="network_error")


def _metadata_fields(metadata: Dict[str, str]) -> Dict[str, str]:
    return {f"metadata[{key}]": str(value) for key, value in (metadata or {}).items()}


def _map_stripe_error(response: httpx.Response) -> PaymentProviderError:
    """Classify a Stripe error response as transient or permanent."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    code = error.get("decline_code") or error.get("code") or str(response.status_code)
    message = error.get("message") or response.text
    logger.error(f"Stripe API error {response.status_code}: {code} - {message}")
    if response.status_code == 429 or response.status_code >= 500:
        return TransientPaymentError(message, code=code)
    return PermanentPaymentError(message, code=code)
