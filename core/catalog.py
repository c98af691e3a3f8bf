"""Service catalog — the bookable services a tenant offers."""
from __future__ import annotations

import re
from typing import Optional

from config.settings import BookingConfig
from models.schemas import Service


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class ServiceCatalog:
    """
    Ordered list of services. Customers pick a service by its 1-based
    position in the active list or by its name (case-insensitive).
    """

    def __init__(self, services: list[Service]):
        self._services = list(services)

    @classmethod
    def from_config(cls, config: BookingConfig) -> ServiceCatalog:
        # Ids derive from names so stored selections survive a restart.
        return cls([
            Service(id=_slug(s.name), name=s.name, price=s.price,
                    description=s.description, is_active=s.is_active)
            for s in config.services
        ])

    def active(self) -> list[Service]:
        return [s for s in self._services if s.is_active]

    def get(self, service_id: str) -> Optional[Service]:
        for service in self._services:
            if service.id == service_id:
                return service
        return None

    def match(self, text: str) -> Optional[Service]:
        choice = (text or "").strip().lower()
        if not choice:
            return None
        services = self.active()
        if choice.isdecimal():
            index = int(choice)
            if 1 <= index <= len(services):
                return services[index - 1]
            return None
        for service in services:
            if service.name.lower() == choice:
                return service
        return None

    def __len__(self) -> int:
        return len(self.active())
