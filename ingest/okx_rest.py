import asyncio
import base64
import hmac
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from config.config_loader import as_bool
from orchestration.errors import ExchangeRejected, RateLimited, TransportError, ValidationError


logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = {"50011", "50061"}


class OKXAPIError(ExchangeRejected):
    def __init__(self, status: int, code: Optional[str], msg: Optional[str], body: str = ""):
        super().__init__(code, msg)
        self.status = status
        self.body = body


class OKXRESTClient:
    """Signed OKX v5 REST client sharing one lazily created aiohttp session."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        simulated: Optional[bool] = None,
        timeout_s: Optional[float] = None,
    ):
        exchange = config.section('exchange')
        self.base_url = (base_url or exchange.get('rest_url') or "https://www.okx.com").rstrip("/")
        self.api_key: str = api_key if api_key is not None else (exchange.get('api_key') or "")
        self.api_secret: str = api_secret if api_secret is not None else (exchange.get('api_secret') or "")
        self.passphrase: str = passphrase if passphrase is not None else (exchange.get('passphrase') or "")
        if simulated is None:
            simulated = exchange.get('simulated')
        self.simulated = as_bool(simulated, False, 'exchange.simulated')
        self.timeout_s = float(timeout_s or exchange.get('request_timeout_s', 10))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and self.passphrase)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(
            self.api_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def _headers(self, method: str, request_path: str, body: str, signed: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if signed:
            timestamp = self._timestamp()
            headers.update({
                "OK-ACCESS-KEY": self.api_key,
                "OK-ACCESS-SIGN": self.sign(timestamp, method, request_path, body),
                "OK-ACCESS-TIMESTAMP": timestamp,
                "OK-ACCESS-PASSPHRASE": self.passphrase,
            })
        if self.simulated:
            headers["x-simulated-trading"] = "1"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        signed: bool = False,
    ) -> List[Any]:
        if signed and not self.has_credentials:
            raise ValidationError("OKX API key, secret and passphrase are required for signed requests")

        query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        request_path = f"{path}?{query}" if query else path
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = self._headers(method, request_path, body_text, signed)

        session = await self._get_session()
        try:
            async with session.request(
                method.upper(),
                f"{self.base_url}{request_path}",
                data=body_text or None,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except asyncio.TimeoutError as exc:
            raise TransportError(f"OKX {method} {path} timed out after {self.timeout_s}s") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"OKX {method} {path} failed: {exc}") from exc

        try:
            payload = json.loads(text) if text else {}
        except ValueError:
            payload = None

        code = None
        msg = None
        if isinstance(payload, dict):
            code = str(payload.get("code", "0"))
            msg = payload.get("msg")

        if status == 429 or code in RATE_LIMIT_CODES:
            raise RateLimited(f"OKX rate limit on {path} (status={status}, code={code})")
        if status >= 400:
            raise OKXAPIError(status, code, msg or text[:200], text)
        if not isinstance(payload, dict):
            raise TransportError(f"OKX {method} {path} returned an unexpected body")
        if code not in ("0", ""):
            # Batch-style endpoints report the per-item reason in data[0].sMsg.
            data = payload.get("data") or []
            first = data[0] if data and isinstance(data[0], dict) else {}
            raise OKXAPIError(
                status,
                first.get("sCode") or code,
                first.get("sMsg") or msg,
                text,
            )

        data = payload.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> List[Any]:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        body: Optional[Any] = None,
        signed: bool = True,
    ) -> List[Any]:
        return await self._request("POST", path, body=body, signed=signed)
