"""Pagar.me API client and the payment gateway capability it implements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.timezone_utils import utc_now
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

PIX_EXPIRES_IN_SECONDS = 30 * 60
BOLETO_DUE_DAYS = 3

# Normalised gateway statuses
STATUS_PAID = "paid"
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"

_CHARGE_STATUS_MAP = {
    "paid": STATUS_PAID,
    "overpaid": STATUS_PAID,
    "pending": STATUS_PENDING,
    "waiting_payment": STATUS_PENDING,
    "generated": STATUS_PENDING,
    "processing": STATUS_PROCESSING,
    "authorized_pending_capture": STATUS_PROCESSING,
    "failed": STATUS_FAILED,
    "not_authorized": STATUS_FAILED,
    "with_error": STATUS_FAILED,
    "underpaid": STATUS_FAILED,
    "canceled": STATUS_REFUNDED,
    "refunded": STATUS_REFUNDED,
}

# Normalised transfer statuses mirror WithdrawalStatus values
_TRANSFER_STATUS_MAP = {
    "pending": "pending",
    "created": "pending",
    "processing": "processing",
    "transferred": "completed",
    "paid": "completed",
    "failed": "failed",
    "canceled": "failed",
}


def normalize_charge_status(raw: Optional[str]) -> str:
    return _CHARGE_STATUS_MAP.get((raw or "").lower(), STATUS_FAILED)


def normalize_transfer_status(raw: Optional[str]) -> str:
    return _TRANSFER_STATUS_MAP.get((raw or "").lower(), "failed")


class GatewayError(RuntimeError):
    """Raised when the gateway rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_body = error_body


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the configured timeout; outcome unknown."""


@dataclass(frozen=True)
class GatewayResult:
    transaction_id: str
    status: str
    artifacts: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CardDetails:
    number: str
    holder_name: str
    exp_month: int
    exp_year: int
    cvv: str
    installments: int = 1


@dataclass(frozen=True)
class ChargeRequest:
    """Everything the gateway needs to charge a booking."""

    amount_minor: int
    description: str
    reference: str
    customer_name: str
    customer_email: str
    customer_document: Optional[str] = None
    billing_address: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Capability consumed by the payment and withdrawal services."""

    def capture_card(self, charge: ChargeRequest, card: CardDetails) -> GatewayResult:
        ...

    def generate_pix(self, charge: ChargeRequest) -> GatewayResult:
        ...

    def generate_boleto(self, charge: ChargeRequest) -> GatewayResult:
        ...

    def check_status(self, transaction_id: str) -> GatewayResult:
        ...

    def refund(
        self, transaction_id: str, amount_minor: int, reason: str, *, idempotency_key: str
    ) -> GatewayResult:
        ...

    def create_transfer(
        self, reference: str, amount_minor: int, bank_account: Dict[str, Any]
    ) -> GatewayResult:
        ...


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check an ``x-hub-signature-256`` style HMAC-SHA256 signature."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    return hmac.compare_digest(expected, provided)


class PagarmeClient:
    """Thin client for the Pagar.me core v5 REST API."""

    def __init__(
        self,
        *,
        secret_key: str | SecretStr,
        base_url: str = "https://api.pagar.me/core/v5",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = (
            secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        )
        if not secret_value:
            raise ValueError("Pagar.me secret key must be provided")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        # Pagar.me uses HTTP Basic auth with the secret key as username and a blank password.
        self._auth = httpx.BasicAuth(secret_value, "")

    # ------------------------------------------------------------ payments
    def capture_card(self, charge: ChargeRequest, card: CardDetails) -> GatewayResult:
        payment = {
            "payment_method": "credit_card",
            "credit_card": {
                "installments": card.installments,
                "statement_descriptor": "MARKETPLACE",
                "card": {
                    "number": card.number,
                    "holder_name": card.holder_name,
                    "exp_month": card.exp_month,
                    "exp_year": card.exp_year,
                    "cvv": card.cvv,
                    "billing_address": self._address(charge.billing_address),
                },
            },
        }
        return self._create_order("capture_card", charge, payment)

    def generate_pix(self, charge: ChargeRequest) -> GatewayResult:
        payment = {"payment_method": "pix", "pix": {"expires_in": PIX_EXPIRES_IN_SECONDS}}
        return self._create_order("generate_pix", charge, payment)

    def generate_boleto(self, charge: ChargeRequest) -> GatewayResult:
        due_at = utc_now() + timedelta(days=BOLETO_DUE_DAYS)
        payment = {
            "payment_method": "boleto",
            "boleto": {"instructions": charge.description, "due_at": due_at.isoformat()},
        }
        return self._create_order("generate_boleto", charge, payment)

    def check_status(self, transaction_id: str) -> GatewayResult:
        if not transaction_id:
            raise ValueError("transaction_id must be provided")
        data = self._call("check_status", "GET", f"/charges/{transaction_id}")
        return GatewayResult(
            transaction_id=str(data.get("id") or transaction_id),
            status=normalize_charge_status(data.get("status")),
            artifacts=self._artifacts(data),
        )

    def refund(
        self, transaction_id: str, amount_minor: int, reason: str, *, idempotency_key: str
    ) -> GatewayResult:
        data = self._call(
            "refund",
            "DELETE",
            f"/charges/{transaction_id}",
            json_body={"amount": amount_minor, "metadata": {"reason": reason}},
            headers={"Idempotency-Key": idempotency_key},
        )
        return GatewayResult(
            transaction_id=str(data.get("id") or transaction_id),
            status=normalize_charge_status(data.get("status")),
        )

    # ------------------------------------------------------------ transfers
    def create_transfer(
        self, reference: str, amount_minor: int, bank_account: Dict[str, Any]
    ) -> GatewayResult:
        body = {
            "amount": amount_minor,
            "metadata": {"withdrawal_id": reference},
            "bank_account": bank_account,
        }
        data = self._call(
            "create_transfer",
            "POST",
            "/transfers",
            json_body=body,
            headers={"Idempotency-Key": reference},
        )
        return GatewayResult(
            transaction_id=str(data.get("id", "")),
            status=normalize_transfer_status(data.get("status")),
        )

    # ------------------------------------------------------------ helpers
    def _create_order(
        self, operation: str, charge: ChargeRequest, payment: Dict[str, Any]
    ) -> GatewayResult:
        customer: Dict[str, Any] = {
            "name": charge.customer_name,
            "email": charge.customer_email,
            "type": "individual",
        }
        if charge.customer_document:
            customer["document"] = charge.customer_document
            customer["document_type"] = "CPF"
        body = {
            "code": charge.reference,
            "items": [
                {
                    "amount": charge.amount_minor,
                    "description": charge.description,
                    "quantity": 1,
                    "code": charge.reference,
                }
            ],
            "customer": customer,
            "payments": [payment],
        }
        data = self._call(
            operation,
            "POST",
            "/orders",
            json_body=body,
            headers={"Idempotency-Key": f"{charge.reference}:{payment['payment_method']}"},
        )
        charges: List[Dict[str, Any]] = data.get("charges") or []
        first_charge = charges[0] if charges else {}
        transaction_id = str(first_charge.get("id") or data.get("id") or "")
        if not transaction_id:
            raise GatewayError("Pagar.me order response did not include a charge id")
        raw_status = first_charge.get("status") or data.get("status")
        return GatewayResult(
            transaction_id=transaction_id,
            status=normalize_charge_status(raw_status),
            artifacts=self._artifacts(first_charge),
        )

    @staticmethod
    def _address(address: Dict[str, Any]) -> Dict[str, Any]:
        if not address:
            return {}
        return {
            "line_1": f"{address.get('number', '')}, {address.get('street', '')}, "
            f"{address.get('neighborhood', '')}".strip(", "),
            "line_2": address.get("complement") or "",
            "zip_code": address.get("zip_code", ""),
            "city": address.get("city", ""),
            "state": address.get("state", ""),
            "country": address.get("country", "BR"),
        }

    @staticmethod
    def _artifacts(charge: Dict[str, Any]) -> Dict[str, Any]:
        transaction = charge.get("last_transaction") or {}
        artifacts: Dict[str, Any] = {}
        if transaction.get("qr_code"):
            artifacts["pix_code"] = transaction.get("qr_code")
            artifacts["pix_qr_code"] = transaction.get("qr_code_url")
            artifacts["pix_expires_at"] = _parse_datetime(transaction.get("expires_at"))
        if transaction.get("line") or transaction.get("pdf") or transaction.get("url"):
            artifacts["boleto_barcode"] = transaction.get("line") or transaction.get("barcode")
            artifacts["boleto_url"] = transaction.get("pdf") or transaction.get("url")
            artifacts["boleto_due_date"] = _parse_datetime(transaction.get("due_at"))
        return {key: value for key, value in artifacts.items() if value is not None}

    def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        try:
            data = self.request(method, path, json_body=json_body, headers=headers)
        except GatewayTimeoutError:
            prometheus_metrics.record_gateway_call(operation, "timeout")
            raise
        except GatewayError:
            prometheus_metrics.record_gateway_call(operation, "error")
            raise
        prometheus_metrics.record_gateway_call(operation, "ok")
        return data

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw Pagar.me API request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        with httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            auth=self._auth,
            headers={"Accept": "application/json"},
        ) as client:
            request = client.build_request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
            )
            try:
                response = client.send(request)
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                logger.error("Pagar.me timeout for %s %s", method, path)
                raise GatewayTimeoutError("Pagar.me did not respond in time") from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                error_payload: Any | None = None
                try:
                    error_payload = exc.response.json()
                except json.JSONDecodeError:
                    error_payload = exc.response.text

                logger.error(
                    "Pagar.me API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                raise GatewayError(
                    f"Pagar.me API responded with status {status}",
                    status_code=status,
                    error_body=error_payload,
                ) from exc
            except httpx.RequestError as exc:
                logger.error("Pagar.me request failure for %s %s: %s", method, path, exc)
                raise GatewayError("Failed to reach Pagar.me API") from exc

        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from Pagar.me for %s %s: %s", method, path, response.text)
            raise GatewayError("Received malformed JSON from Pagar.me") from exc


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class FakePaymentGateway:
    """
    In-memory gateway for non-production flows and tests.

    ``capture_status`` decides what card captures return. ``fail_with`` maps an
    operation name to an exception raised on its next call.
    """

    def __init__(self, capture_status: str = STATUS_PAID) -> None:
        self.capture_status = capture_status
        self.transfer_status = STATUS_PROCESSING
        self.fail_with: Dict[str, Exception] = {}
        self.statuses: Dict[str, str] = {}
        self.calls: List[tuple[str, Dict[str, Any]]] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def _maybe_fail(self, operation: str) -> None:
        exc = self.fail_with.pop(operation, None)
        if exc is not None:
            raise exc

    def _record(self, operation: str, **payload: Any) -> None:
        self.calls.append((operation, payload))
        self._maybe_fail(operation)

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.calls if name == operation]

    def capture_card(self, charge: ChargeRequest, card: CardDetails) -> GatewayResult:
        self._record("capture_card", amount_minor=charge.amount_minor, reference=charge.reference)
        transaction_id = f"ch_fake_{uuid4().hex}"
        self.statuses[transaction_id] = self.capture_status
        self._logger.debug("Fake card charge", extra={"transaction_id": transaction_id})
        return GatewayResult(transaction_id, self.capture_status)

    def generate_pix(self, charge: ChargeRequest) -> GatewayResult:
        self._record("generate_pix", amount_minor=charge.amount_minor, reference=charge.reference)
        transaction_id = f"ch_fake_{uuid4().hex}"
        self.statuses[transaction_id] = STATUS_PENDING
        return GatewayResult(
            transaction_id,
            STATUS_PENDING,
            {
                "pix_code": f"00020126fake{transaction_id}",
                "pix_qr_code": f"https://fake.pagar.me/qr/{transaction_id}.png",
                "pix_expires_at": utc_now() + timedelta(seconds=PIX_EXPIRES_IN_SECONDS),
            },
        )

    def generate_boleto(self, charge: ChargeRequest) -> GatewayResult:
        self._record(
            "generate_boleto", amount_minor=charge.amount_minor, reference=charge.reference
        )
        transaction_id = f"ch_fake_{uuid4().hex}"
        self.statuses[transaction_id] = STATUS_PENDING
        return GatewayResult(
            transaction_id,
            STATUS_PENDING,
            {
                "boleto_barcode": "34191.79001 01043.510047 91020.150008 1 00000000000000",
                "boleto_url": f"https://fake.pagar.me/boleto/{transaction_id}.pdf",
                "boleto_due_date": utc_now() + timedelta(days=BOLETO_DUE_DAYS),
            },
        )

    def check_status(self, transaction_id: str) -> GatewayResult:
        self._record("check_status", transaction_id=transaction_id)
        return GatewayResult(transaction_id, self.statuses.get(transaction_id, STATUS_FAILED))

    def refund(
        self, transaction_id: str, amount_minor: int, reason: str, *, idempotency_key: str
    ) -> GatewayResult:
        self._record(
            "refund",
            transaction_id=transaction_id,
            amount_minor=amount_minor,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        self.statuses[transaction_id] = STATUS_REFUNDED
        return GatewayResult(transaction_id, STATUS_REFUNDED)

    def create_transfer(
        self, reference: str, amount_minor: int, bank_account: Dict[str, Any]
    ) -> GatewayResult:
        self._record("create_transfer", reference=reference, amount_minor=amount_minor)
        return GatewayResult(f"tr_fake_{uuid4().hex}", self.transfer_status)
