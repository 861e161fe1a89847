"""Deterministic offline providers for local runs and tests."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any

from creation_jobs.providers.base import (
    GeneratedAsset,
    GenerationOptions,
    NotifyAck,
)

logger = logging.getLogger(__name__)

SIMULATED_MODEL = "simulated-v1"


class SimulatedGenerationProvider:
    """Derive stable output from the prompt digest.

    JSON-mode answers come wrapped in a fenced block, the way chat models
    usually answer, so callers exercise their tolerant parsing path.
    """

    def generate(self, prompt: str, options: GenerationOptions) -> GeneratedAsset:
        digest = _digest(f"{options.kind}|{options.task}|{prompt}")
        if options.kind == "image":
            return GeneratedAsset(
                kind="image",
                model=SIMULATED_MODEL,
                url=f"sim://images/{digest[:16]}.png",
                metadata={"digest": digest},
            )

        if options.json_mode:
            body = {
                "task": options.task,
                "summary": " ".join(prompt.split())[:80],
                "score": int(digest[:4], 16) % 101,
            }
            text = "```json\n" + json.dumps(body, sort_keys=True) + "\n```"
        else:
            text = f"[{options.task or 'text'}] {' '.join(prompt.split())[:200]}"
        return GeneratedAsset(kind="text", model=SIMULATED_MODEL, text=text, metadata={"digest": digest})


class SimulatedNotificationProvider:
    """Record notifications in memory and acknowledge them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event: str, data: dict[str, Any]) -> NotifyAck:
        with self._lock:
            self.sent.append((event, dict(data)))
        provider_id = f"sim-{_digest(event + json.dumps(data, sort_keys=True, default=str))[:12]}"
        logger.debug("Simulated notification %s acknowledged as %s", event, provider_id)
        return NotifyAck(event=event, accepted=True, provider_id=provider_id)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
