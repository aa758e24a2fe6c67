"""
HTTP clients for the remote ledger and the mobile money provider.

Transport failures are translated here, at the boundary: 5xx, timeouts and
connection errors are retryable (`LedgerUnavailable` / retryable
`ProviderError`); other 4xx are rejections.
"""

import json
import socket
import time
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .errors import LedgerRejected, LedgerUnavailable, ProviderError
from .models import LedgerReceipt, PendingSale


def _http_json(method: str, url: str, payload: Optional[dict] = None, headers: Optional[dict] = None, timeout: float = 10.0) -> dict:
    data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
    req = Request(url, data=data, headers=headers or {}, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    with urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode("utf-8") if resp else ""
    if not body:
        return {}
    try:
        out = json.loads(body)
    except ValueError:
        return {"raw": body}
    # Non-object JSON is kept raw, like unparseable text.
    return out if isinstance(out, dict) else {"raw": body}


def _error_body(ex: HTTPError) -> str:
    try:
        return ex.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


def _parse_json(raw: str) -> dict:
    try:
        out = json.loads(raw)
    except ValueError:
        return {}
    return out if isinstance(out, dict) else {}


class RemoteLedgerClient:
    def __init__(self, base_url: str, device_id: str = "", device_token: str = "", timeout: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.device_id = device_id
        self.device_token = device_token
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"X-Device-Id": self.device_id or "", "X-Device-Token": self.device_token or ""}

    def post_sale(self, sale: PendingSale) -> LedgerReceipt:
        if not self.base_url:
            raise LedgerUnavailable("ledger url is not configured")
        headers = {**self._headers(), "Idempotency-Key": sale.idempotency_key}
        try:
            res = _http_json("POST", f"{self.base_url}/sales", sale.model_dump(mode="json"), headers, self.timeout)
        except HTTPError as ex:
            body = _error_body(ex)
            if ex.code == 409:
                # Duplicate idempotency key: the ledger returns the original result.
                original = _parse_json(body)
                if original.get("sale_id"):
                    return LedgerReceipt(sale_id=str(original["sale_id"]), sale_number=original.get("sale_number"), duplicate=True)
            if ex.code >= 500 or ex.code in {408, 429}:
                raise LedgerUnavailable(f"ledger returned HTTP {ex.code}", status=ex.code) from ex
            raise LedgerRejected(f"ledger rejected sale: HTTP {ex.code}", status=ex.code, body=body[:2000]) from ex
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            raise LedgerUnavailable(f"ledger unreachable: {ex}") from ex
        if not res.get("sale_id"):
            raise LedgerRejected("ledger response missing sale_id", body=json.dumps(res)[:2000])
        return LedgerReceipt(
            sale_id=str(res["sale_id"]),
            sale_number=res.get("sale_number"),
            duplicate=bool(res.get("duplicate")),
        )

    def health(self, timeout: float = 0.8) -> dict:
        if not self.base_url:
            return {"ok": False, "error": "missing ledger url", "latency_ms": None}
        started = time.time()
        try:
            data = _http_json("GET", f"{self.base_url}/health", None, self._headers(), max(0.2, timeout))
            if "raw" in data:
                return {"ok": False, "error": "unexpected health response", "latency_ms": int((time.time() - started) * 1000)}
            ok = bool(data.get("ok", True))
            return {"ok": ok, "error": None if ok else "ledger reported not ok", "latency_ms": int((time.time() - started) * 1000)}
        except (HTTPError, URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            return {"ok": False, "error": str(ex), "latency_ms": int((time.time() - started) * 1000)}

    def catalog_delta(self, since: Optional[str]) -> dict:
        """Products, customers and discounts changed after `since`, plus `next_cursor`."""
        url = f"{self.base_url}/catalog/delta"
        if since:
            url += f"?since={quote(since)}"
        try:
            data = _http_json("GET", url, None, self._headers(), self.timeout)
        except HTTPError as ex:
            if ex.code >= 500:
                raise LedgerUnavailable(f"catalog delta failed: HTTP {ex.code}", status=ex.code) from ex
            raise LedgerRejected(f"catalog delta rejected: HTTP {ex.code}", status=ex.code, body=_error_body(ex)[:2000]) from ex
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            raise LedgerUnavailable(f"ledger unreachable: {ex}") from ex
        if "raw" in data:
            raise LedgerRejected("catalog delta is not a JSON object", body=data["raw"][:2000])
        return data


class PaymentProviderClient:
    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        if not self.base_url:
            raise ProviderError("payment provider is not configured", retryable=False)
        try:
            return _http_json(method, f"{self.base_url}{path}", payload, self._headers(), self.timeout)
        except HTTPError as ex:
            retryable = ex.code >= 500 or ex.code in {408, 429}
            raise ProviderError(f"provider returned HTTP {ex.code}", retryable=retryable, status=ex.code) from ex
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as ex:
            raise ProviderError(f"provider unreachable: {ex}", retryable=True) from ex

    def initiate(self, amount: int, currency: str, success_url: str, cancel_url: str, reference: str, customer_phone: Optional[str] = None) -> dict:
        res = self._call(
            "POST",
            "/payments",
            {
                "amount": amount,
                "currency": currency,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "reference": reference,
                "customer_phone": customer_phone,
            },
        )
        if not res.get("transaction_id"):
            raise ProviderError("provider response missing transaction_id", retryable=True)
        return {"transaction_id": str(res["transaction_id"]), "payment_url": res.get("payment_url")}

    def get_status(self, transaction_id: str) -> str:
        res = self._call("GET", f"/payments/{quote(transaction_id)}")
        return str(res.get("status") or "pending").strip().lower()
