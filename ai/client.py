import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import config
from orchestration.errors import ParseError, RateLimited, TransportError, ValidationError


logger = logging.getLogger(__name__)


class ChatCompletionClient:
    """OpenAI-compatible chat completions client (DeepSeek by default)."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_s: Optional[float] = None,
        temperature: float = 0.3,
    ):
        ai_cfg = config.section('ai')
        self.endpoint = (endpoint or ai_cfg.get('endpoint') or "https://api.deepseek.com").rstrip("/")
        self.api_key: str = api_key if api_key is not None else (ai_cfg.get('api_key') or "")
        self.model = model or ai_cfg.get('model') or "deepseek-chat"
        self.timeout_s = float(timeout_s or ai_cfg.get('timeout_s', 60))
        self.temperature = temperature
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

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

    def build_payload(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
            "stream": False,
        }

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Single request; no retry. Returns the assistant message content."""
        if not self.has_credentials:
            raise ValidationError("AI provider API key is not configured")

        session = await self._get_session()
        url = f"{self.endpoint}/chat/completions"
        try:
            async with session.post(
                url,
                json=self.build_payload(system_prompt, user_prompt),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except asyncio.TimeoutError as exc:
            raise TransportError(f"AI provider timed out after {self.timeout_s}s") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"AI provider request failed: {exc}") from exc

        if status == 429:
            raise RateLimited("AI provider rate limit (HTTP 429)")
        if status >= 400:
            raise TransportError(f"AI provider returned HTTP {status}: {text[:200]}")

        try:
            payload = json.loads(text)
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ParseError(f"Unexpected AI provider response: {text[:200]}") from exc
        if not isinstance(content, str) or not content.strip():
            raise ParseError("AI provider returned an empty message")
        return content
