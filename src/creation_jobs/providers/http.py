"""HTTP provider adapters built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from creation_jobs.errors import ProviderError
from creation_jobs.providers.base import (
    GeneratedAsset,
    GenerationOptions,
    NotifyAck,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "creation-jobs/0.1"


class _HttpProviderBase:
    def __init__(
        self,
        *,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling provider %s", self.url)
            raise ProviderError(f"Provider timeout: {self.url}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling provider %s: %s", self.url, exc)
            raise ProviderError(f"Provider request failed: {exc}") from exc

        if not response.is_success:
            raise ProviderError(f"Provider {self.url} answered HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"Provider {self.url} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"Provider {self.url} returned {type(payload).__name__}, not an object")
        return payload

    def close(self) -> None:
        self._client.close()


class HttpGenerationProvider(_HttpProviderBase):
    """POST prompts to a generation gateway."""

    def generate(self, prompt: str, options: GenerationOptions) -> GeneratedAsset:
        payload = self._post(
            {
                "prompt": prompt,
                "kind": options.kind,
                "task": options.task,
                "json_mode": options.json_mode,
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "metadata": options.metadata,
            },
        )
        text = payload.get("text")
        url = payload.get("url")
        if options.kind == "image" and not isinstance(url, str):
            raise ProviderError("Image generation response has no url")
        if options.kind != "image" and not isinstance(text, str):
            raise ProviderError("Text generation response has no text")
        return GeneratedAsset(
            kind=options.kind,
            model=str(payload.get("model") or "unknown"),
            text=text if isinstance(text, str) else None,
            url=url if isinstance(url, str) else None,
            metadata={key: value for key, value in payload.items() if key not in {"text", "url", "model"}},
        )


class HttpNotificationProvider(_HttpProviderBase):
    """POST events to a notification (CRM / email) gateway."""

    def notify(self, event: str, data: dict[str, Any]) -> NotifyAck:
        payload = self._post({"event": event, "data": data})
        provider_id = payload.get("id")
        return NotifyAck(
            event=event,
            accepted=bool(payload.get("accepted", True)),
            provider_id=str(provider_id) if provider_id is not None else None,
            response=payload,
        )
