from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional, Protocol

import httpx

from .config import Settings, get_settings
from .errors import ConfigurationError, GatewayError

_log = logging.getLogger("carebook.gateway")


def expected_signature(secret: str, order_id: str, payment_id: str) -> str:
    msg = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    expect = expected_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expect, (signature or "").strip())


class PaymentGateway(Protocol):
    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> str:
        ...


class RazorpayGateway:
    """Orders API client. Amounts are already in minor units (paise)."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None):
        st = settings or get_settings()
        missing = st.gateway_missing_keys()
        if missing:
            raise ConfigurationError("payment gateway not configured", details={"missing": missing})
        self.key_id = st.razorpay_key_id
        self.key_secret = st.razorpay_key_secret
        self._client = httpx.Client(
            base_url=st.razorpay_base_url.rstrip("/"),
            auth=(st.razorpay_key_id, st.razorpay_key_secret),
            timeout=st.razorpay_timeout_secs,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            transport=transport,
        )

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> str:
        payload = {"amount": int(amount_minor), "currency": currency, "receipt": receipt[:40]}
        if notes:
            payload["notes"] = notes
        try:
            r = self._client.post("/orders", json=payload)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = ""
            try:
                j = e.response.json()
                err = j.get("error") if isinstance(j, dict) else None
                msg = str((err or {}).get("description") or "") if isinstance(err, dict) else ""
            except ValueError:
                msg = e.response.text or ""
            _log.warning("gateway order rejected", extra={"status": e.response.status_code, "receipt": receipt})
            raise GatewayError(msg or "payment gateway rejected the order", details={"status": e.response.status_code})
        except httpx.HTTPError as e:
            _log.warning("gateway unreachable: %s", e, extra={"receipt": receipt})
            raise GatewayError("payment gateway unavailable")
        order_id = (r.json() or {}).get("id")
        if not order_id:
            raise GatewayError("payment gateway returned no order id")
        return str(order_id)

    def close(self) -> None:
        self._client.close()


_GATEWAY: Optional[RazorpayGateway] = None


def get_gateway() -> PaymentGateway:
    """Shared gateway client; raises ConfigurationError while keys are unset."""
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = RazorpayGateway()
    return _GATEWAY
