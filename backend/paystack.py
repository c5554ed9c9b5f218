import logging
import re
import secrets
import string
import time
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Tuple

import requests

from money import from_minor_units

logger = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "bank_transfer"]

REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9.=\-]+$")
_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

# Paystack reports a handful of in-flight states; only these two are final.
_SUCCESS_STATES = {"success"}
_FAILED_STATES = {"failed", "reversed"}


class GatewayError(Exception):
    """Base class for everything the payment gateway can answer with."""

    status_code = 502
    retryable = False

    def __init__(self, message: str, http_status: Optional[int] = None, payload=None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.payload = payload


class InvalidParameters(GatewayError):
    status_code = 400


class Unauthorized(GatewayError):
    status_code = 401


class Forbidden(GatewayError):
    status_code = 403


class NotFound(GatewayError):
    status_code = 404


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or 5xx. The outcome of the call is unknown."""

    status_code = 503
    retryable = True


class InitializedTransaction(NamedTuple):
    authorization_url: str
    access_code: str
    reference: str


class VerifiedTransaction(NamedTuple):
    reference: str
    status: str
    amount: float
    amount_minor_units: int
    paid_at: Optional[str]
    customer: Dict
    metadata: Dict
    gateway_response: str

    def as_dict(self) -> Dict:
        return {
            "reference": self.reference,
            "status": self.status,
            "amount": self.amount,
            "paid_at": self.paid_at,
            "customer": self.customer,
            "metadata": self.metadata,
            "gateway_response": self.gateway_response,
        }


def generate_reference(now: Optional[datetime] = None) -> str:
    timestamp = int((now.timestamp() if now else time.time()) * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"PAY-{timestamp}-{suffix}"


def is_valid_reference(reference) -> bool:
    return isinstance(reference, str) and bool(REFERENCE_PATTERN.match(reference))


def normalize_transaction_status(raw_status) -> str:
    status = str(raw_status or "").strip().lower()
    if status in _SUCCESS_STATES:
        return "success"
    if status in _FAILED_STATES:
        return "failed"
    return "pending"


class PaystackClient:
    """Thin adapter over the Paystack transaction API.

    Amounts cross this boundary in minor units (kobo). Nothing here retries:
    a timeout is surfaced as GatewayUnavailable and the caller decides.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.base_url = (base_url or PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        if not self.secret_key:
            raise Unauthorized("Payment service configuration error")

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        started = time.monotonic()
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.Timeout as exc:
            logger.error("Paystack %s %s timed out: %s", method, path, exc)
            raise GatewayUnavailable("Request to Paystack API timed out")
        except requests.ConnectionError as exc:
            logger.error("Paystack %s %s connection failed: %s", method, path, exc)
            raise GatewayUnavailable("Cannot connect to Paystack API")
        except requests.RequestException as exc:
            logger.error("Paystack %s %s failed: %s", method, path, exc)
            raise GatewayUnavailable("Paystack request failed")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Paystack %s %s -> %s in %sms", method, path, response.status_code, elapsed_ms
        )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            raise self._error_for(response.status_code, body)

        if not body.get("status"):
            message = body.get("message") or "Paystack rejected the request"
            raise InvalidParameters(message, response.status_code, body)

        return body

    @staticmethod
    def _error_for(http_status: int, body: Dict) -> GatewayError:
        message = str(body.get("message") or "").strip()
        if http_status == 400:
            return InvalidParameters(message or "Invalid request parameters", http_status, body)
        if http_status == 401:
            return Unauthorized("Invalid API key or unauthorized access", http_status, body)
        if http_status == 403:
            return Forbidden("Access forbidden - check your API permissions", http_status, body)
        if http_status == 404:
            return NotFound(message or "Transaction not found", http_status, body)
        if http_status >= 500:
            return GatewayUnavailable(
                "Paystack server error - please try again later", http_status, body
            )
        return InvalidParameters(message or f"API error: {http_status}", http_status, body)

    def initialize_transaction(
        self,
        email: str,
        amount_minor_units: int,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict] = None,
        currency: str = "NGN",
        channels: Optional[List[str]] = None,
    ) -> InitializedTransaction:
        if (
            isinstance(amount_minor_units, bool)
            or not isinstance(amount_minor_units, int)
            or amount_minor_units <= 0
        ):
            raise InvalidParameters("Amount must be a positive integer in minor units")
        if not is_valid_reference(reference):
            raise InvalidParameters("Invalid transaction reference")

        payload = {
            "email": email,
            "amount": amount_minor_units,
            "reference": reference,
            "currency": currency,
            "callback_url": callback_url,
            "channels": channels or DEFAULT_CHANNELS,
            "metadata": metadata or {},
        }
        body = self._request("POST", "/transaction/initialize", json=payload)
        data = body.get("data") or {}
        return InitializedTransaction(
            authorization_url=str(data.get("authorization_url") or ""),
            access_code=str(data.get("access_code") or ""),
            reference=str(data.get("reference") or reference),
        )

    def verify_transaction(self, reference: str) -> VerifiedTransaction:
        if not is_valid_reference(reference):
            raise InvalidParameters("Invalid transaction reference")

        body = self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        amount_minor_units = int(data.get("amount") or 0)
        return VerifiedTransaction(
            reference=str(data.get("reference") or ""),
            status=normalize_transaction_status(data.get("status")),
            amount=float(from_minor_units(amount_minor_units)),
            amount_minor_units=amount_minor_units,
            paid_at=data.get("paid_at") or data.get("paidAt"),
            customer=data.get("customer") or {},
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
            gateway_response=str(data.get("gateway_response") or ""),
        )

    def list_transactions(
        self,
        per_page: Optional[int] = None,
        page: Optional[int] = None,
        status: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
    ) -> Tuple[List[Dict], Dict]:
        params = {}
        if per_page:
            params["perPage"] = per_page
        if page:
            params["page"] = page
        if status:
            params["status"] = status
        if from_date:
            params["from"] = from_date
        if to_date:
            params["to"] = to_date

        body = self._request("GET", "/transaction", params=params)
        return body.get("data") or [], body.get("meta") or {}

    def get_transaction(self, transaction_id) -> Dict:
        body = self._request("GET", f"/transaction/{transaction_id}")
        return body.get("data") or {}
