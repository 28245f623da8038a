# marketplace/services/gateway_client.py
import hashlib
import hmac
from decimal import Decimal

import requests
from requests import RequestException

from marketplace.domain.money import to_minor_units
from marketplace.utils.retry import http_retry
from marketplace.utils.settings import (
    GATEWAY_BASE_URL,
    GATEWAY_KEY_ID,
    GATEWAY_KEY_SECRET,
    GATEWAY_WEBHOOK_SECRET,
    GATEWAY_TIMEOUT_SECONDS,
    CURRENCY,
)
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """The gateway answered with an error; nothing happened on its side."""


class GatewayTimeout(GatewayError):
    """No answer; the request may or may not have been applied."""


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentGateway:
    """
    Razorpay-style REST client.

    Amounts cross this boundary in major units (Decimal) and are sent to the
    gateway in minor units.
    """

    def __init__(
        self,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or GATEWAY_BASE_URL).rstrip("/")
        self.key_id = key_id if key_id is not None else GATEWAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else GATEWAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else GATEWAY_WEBHOOK_SECRET
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (self.key_id, self.key_secret)

    def _send(self, path: str, payload: dict) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.info(f"PaymentGateway POST {url}")
        return self.session.post(url, json=payload, timeout=self.timeout)

    @http_retry()
    def _send_with_retry(self, path: str, payload: dict) -> requests.Response:
        return self._send(path, payload)

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        if resp.status_code >= 400:
            raise GatewayError(f"Gateway returned {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    def create_charge_intent(self, amount: Decimal, receipt: str, currency: str = CURRENCY, notes: dict | None = None) -> dict:
        """Returns the gateway order; its "id" is the intent id."""
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            resp = self._send_with_retry("/orders", payload)
        except requests.Timeout as e:
            raise GatewayTimeout(f"Charge intent for {receipt} timed out") from e
        except RequestException as e:
            raise GatewayError(f"Charge intent for {receipt} failed: {e}") from e
        return self._json(resp)

    def refund(self, gateway_payment_id: str, amount: Decimal, notes: dict | None = None) -> dict:
        """
        Never retried here: a refund that timed out may already be applied,
        so the caller records it as unknown instead of sending it again.
        """
        payload = {"amount": to_minor_units(amount), "notes": notes or {}}
        try:
            resp = self._send(f"/payments/{gateway_payment_id}/refund", payload)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise GatewayTimeout(f"Refund for {gateway_payment_id} has an unknown outcome: {e}") from e
        except RequestException as e:
            raise GatewayError(f"Refund for {gateway_payment_id} failed: {e}") from e
        return self._json(resp)

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = _hmac_hex(self.key_secret, f"{gateway_order_id}|{gateway_payment_id}".encode())
        return hmac.compare_digest(expected.encode(), (signature or "").encode())

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        if not self.webhook_secret or not signature:
            return False
        return hmac.compare_digest(_hmac_hex(self.webhook_secret, body).encode(), signature.encode())
