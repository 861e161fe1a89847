"""Provider adapters, selected once from settings."""

from __future__ import annotations

from dataclasses import dataclass

from creation_jobs.config import ProviderSettings
from creation_jobs.providers.base import (
    GeneratedAsset,
    GenerationOptions,
    GenerationProvider,
    NotificationProvider,
    NotifyAck,
)
from creation_jobs.providers.http import HttpGenerationProvider, HttpNotificationProvider
from creation_jobs.providers.simulated import (
    SimulatedGenerationProvider,
    SimulatedNotificationProvider,
)

__all__ = [
    "GeneratedAsset",
    "GenerationOptions",
    "GenerationProvider",
    "NotificationProvider",
    "NotifyAck",
    "Providers",
    "resolve_providers",
]


@dataclass(slots=True)
class Providers:
    generation: GenerationProvider
    notification: NotificationProvider

    def close(self) -> None:
        for provider in (self.generation, self.notification):
            close = getattr(provider, "close", None)
            if close is not None:
                close()


def resolve_providers(settings: ProviderSettings) -> Providers:
    """Build the provider pair named by ``settings.mode``."""

    if settings.mode == "simulated":
        return Providers(
            generation=SimulatedGenerationProvider(),
            notification=SimulatedNotificationProvider(),
        )
    if settings.mode == "http":
        if not settings.generation_url or not settings.notification_url:
            raise ValueError("http provider mode needs generation and notification URLs")
        return Providers(
            generation=HttpGenerationProvider(
                url=settings.generation_url,
                api_key=settings.api_key,
                timeout_seconds=settings.request_timeout_seconds,
                max_retries=settings.max_retries,
            ),
            notification=HttpNotificationProvider(
                url=settings.notification_url,
                api_key=settings.api_key,
                timeout_seconds=settings.request_timeout_seconds,
                max_retries=settings.max_retries,
            ),
        )
    raise ValueError(f"Unknown provider mode: {settings.mode!r}")
