"""Provider contracts for content generation and outbound notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    """Per-call generation settings."""

    kind: str = "text"
    task: str | None = None
    json_mode: bool = False
    max_tokens: int = 1024
    temperature: float = 0.7
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GeneratedAsset:
    """Generated text or image reference returned by a provider."""

    kind: str
    model: str
    text: str | None = None
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class NotifyAck:
    """Provider acknowledgement for one outbound notification."""

    event: str
    accepted: bool
    provider_id: str | None = None
    response: dict[str, Any] = field(default_factory=dict)


class GenerationProvider(Protocol):
    def generate(self, prompt: str, options: GenerationOptions) -> GeneratedAsset: ...


class NotificationProvider(Protocol):
    def notify(self, event: str, data: dict[str, Any]) -> NotifyAck: ...
