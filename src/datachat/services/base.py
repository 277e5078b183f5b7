"""Lifecycle interface for components owned by the service manager."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A backend connection or background job with a start/stop lifecycle.

    A ``critical`` service aborts application startup when it fails to start.
    Non-critical ones (the databases) are logged and left to fail per request.
    """

    critical: bool = False

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    async def health_check(self) -> bool:
        """Liveness reported by ``GET /health``."""
        return True
