from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import qrcode as _qr

from apps.orders.app import settings
from apps.orders.app.errors import ProviderError

_log = logging.getLogger("cafe.payments")

_ERROR_LEVELS = {
    "L": _qr.constants.ERROR_CORRECT_L,
    "M": _qr.constants.ERROR_CORRECT_M,
    "Q": _qr.constants.ERROR_CORRECT_Q,
    "H": _qr.constants.ERROR_CORRECT_H,
}


def qr_data_url(data: str, color: str = "#000000", level: str = "M", box_size: int = 8, border: int = 1) -> str:
    """Render `data` as a PNG QR code and return it as a data: URL."""
    qr = _qr.QRCode(error_correction=_ERROR_LEVELS.get(level, _qr.constants.ERROR_CORRECT_M), box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color=color, back_color="#FFFFFF")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@dataclass
class WalletProvider:
    """
    One mobile-wallet integration (GCash, PayMaya). Creates payment QR codes
    and checks webhook signatures; it never touches the database.
    """

    name: str
    api_url: str
    api_key: str = ""
    merchant_id: str = ""
    secret_key: str = ""
    webhook_secret: str = ""
    color: str = "#000000"
    timeout: float = 10.0
    client: Optional[httpx.Client] = None

    @property
    def live(self) -> bool:
        return bool(self.api_key)

    def _http(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client(timeout=self.timeout)
        return self.client

    def _payload(self, order_id: str, amount: float, table_number: Optional[int], reference: str) -> Dict[str, Any]:
        return {
            "merchantId": self.merchant_id,
            "amount": f"{float(amount):.2f}",
            "currency": settings.CURRENCY,
            "reference": reference,
            "description": f"Coffee Shop Order #{order_id}",
            "callbackUrl": f"{settings.API_URL}/payment/{self.name}/callback",
            "returnUrl": f"{settings.FRONTEND_URL}/payment-success?"
            + urlencode({"orderId": order_id, "method": self.name, "amount": amount}),
            "metadata": {"orderId": order_id, "tableNumber": table_number},
        }

    def _simulated_url(self, order_id: str, amount: float, table_number: Optional[int], reference: str) -> str:
        params = {
            "orderId": order_id,
            "amount": f"{float(amount):.2f}",
            "reference": reference,
            "tableNumber": table_number if table_number is not None else "",
            "timestamp": int(time.time() * 1000),
        }
        return f"{settings.API_URL}/payment/{self.name}/process?{urlencode(params)}"

    def create_qr(self, order_id: str, amount: float, table_number: Optional[int] = None) -> Dict[str, Any]:
        reference = f"{self.name.upper()}-{order_id}-{int(time.time() * 1000)}"
        if not self.live:
            # No merchant credentials (dev): encode a link to the local process page.
            payment_url = self._simulated_url(order_id, amount, table_number, reference)
            payment_id = f"SIM-{reference}"
        else:
            payload = self._payload(order_id, amount, table_number, reference)
            body = json.dumps(payload, separators=(",", ":")).encode()
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "X-Signature": _sign(self.secret_key, body),
                "Content-Type": "application/json",
            }
            try:
                r = self._http().post(f"{self.api_url}/v1/payments/qr", content=body, headers=headers)
                r.raise_for_status()
                data = r.json()
            except (httpx.HTTPError, ValueError) as e:
                _log.warning("%s: create payment failed: %s", self.name, e)
                raise ProviderError(f"Failed to generate {self.name} QR code")
            if not data.get("success") or not data.get("qrCode"):
                raise ProviderError(f"Failed to generate {self.name} QR code")
            payment_url = str(data["qrCode"])
            payment_id = str(data.get("paymentId") or "")
        return {
            "qrCode": qr_data_url(payment_url, color=self.color, level="H"),
            "paymentUrl": payment_url,
            "reference": reference,
            "paymentId": payment_id,
        }

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret or not signature:
            return False
        expected = _sign(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature.strip().lower())

    def sign_webhook(self, raw_body: bytes) -> str:
        return _sign(self.webhook_secret, raw_body)

    def check_status(self, payment_id: str) -> Dict[str, Any]:
        if not self.live:
            return {"paymentId": payment_id, "status": "unknown", "simulated": True}
        try:
            r = self._http().get(
                f"{self.api_url}/v1/payments/{payment_id}",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            r.raise_for_status()
            return r.json()
        except (httpx.HTTPError, ValueError) as e:
            _log.warning("%s: status lookup failed for %s: %s", self.name, payment_id, e)
            raise ProviderError(f"Failed to check {self.name} payment status")

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


def build_providers() -> Dict[str, WalletProvider]:
    return {
        "gcash": WalletProvider(
            name="gcash",
            api_url=settings.GCASH_API_URL,
            api_key=settings.GCASH_API_KEY,
            merchant_id=settings.GCASH_MERCHANT_ID,
            secret_key=settings.GCASH_SECRET_KEY,
            webhook_secret=settings.GCASH_WEBHOOK_SECRET,
            color="#006F42",
            timeout=settings.PROVIDER_TIMEOUT_SECS,
        ),
        "paymaya": WalletProvider(
            name="paymaya",
            api_url=settings.PAYMAYA_API_URL,
            api_key=settings.PAYMAYA_API_KEY,
            merchant_id=settings.PAYMAYA_MERCHANT_ID,
            secret_key=settings.PAYMAYA_SECRET_KEY,
            webhook_secret=settings.PAYMAYA_WEBHOOK_SECRET,
            color="#00A3E0",
            timeout=settings.PROVIDER_TIMEOUT_SECS,
        ),
    }
