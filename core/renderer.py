"""
Booking renderer — computes the live values that fill {placeholders} in
booking node text: service list, date picklist, time slots, the UPI
payment link and the customer's current selections.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Optional
from urllib.parse import quote, quote_plus

from config.settings import BookingConfig
from core.catalog import ServiceCatalog
from models.schemas import Conversation, Service
from utils.interpolation import fill_placeholders, stringify, substitute_tokens


def format_short_date(day: date) -> str:
    """Picklist style, e.g. 'Mon, 5 Oct 2026'."""
    return f"{day:%a}, {day.day} {day:%b %Y}"


def format_long_date(day: date) -> str:
    """Confirmation style, e.g. 'Monday, 5 October 2026'."""
    return f"{day:%A}, {day.day} {day:%B %Y}"


class BookingRenderer:

    def __init__(self, config: BookingConfig, catalog: ServiceCatalog):
        self.config = config
        self.catalog = catalog

    # ── Picklists ─────────────────────────────────────

    def date_options(self, today: date) -> list[date]:
        """The next N days, starting tomorrow."""
        return [today + timedelta(days=i) for i in range(1, self.config.date_window_days + 1)]

    def pick_date(self, text: str, today: date) -> Optional[date]:
        choice = (text or "").strip()
        if not choice.isdecimal():
            return None
        options = self.date_options(today)
        index = int(choice)
        if 1 <= index <= len(options):
            return options[index - 1]
        return None

    def pick_slot(self, text: str) -> Optional[str]:
        choice = (text or "").strip()
        if not choice.isdecimal():
            return None
        index = int(choice)
        if 1 <= index <= len(self.config.time_slots):
            return self.config.time_slots[index - 1]
        return None

    def is_payment_confirmation(self, text: str) -> bool:
        lowered = (text or "").strip().lower()
        return any(keyword in lowered for keyword in self.config.payment_keywords)

    # ── Values ────────────────────────────────────────

    def upi_link(self, service: Service) -> str:
        return (
            f"upi://pay?pa={self.config.upi_id}"
            f"&pn={quote_plus(self.config.business_name)}"
            f"&am={stringify(service.price)}"
            f"&cu={self.config.currency}"
            f"&tn=Payment+for+{quote(service.name)}"
        )

    def values(self, conversation: Conversation, today: date) -> dict[str, Any]:
        symbol = self.config.currency_symbol
        services = self.catalog.active()
        dates = self.date_options(today)

        values: dict[str, Any] = {
            "business_name": self.config.business_name,
            "currency_symbol": symbol,
            "service_list": "\n".join(
                f"{i}. {s.name} – {symbol}{stringify(s.price)}" for i, s in enumerate(services, start=1)
            ),
            "service_bullets": "\n".join(f"• {s.name}" for s in services),
            "date_options": "\n".join(
                f"{i}. {format_short_date(d)}" for i, d in enumerate(dates, start=1)
            ),
            "date_count": len(dates),
            "time_options": "\n".join(
                f"{i}. {slot}" for i, slot in enumerate(self.config.time_slots, start=1)
            ),
            "slot_count": len(self.config.time_slots),
        }
        for i, d in enumerate(dates, start=1):
            values[f"date{i}"] = format_short_date(d)

        service = self.catalog.get(conversation.selected_service) if conversation.selected_service else None
        if service is not None:
            values["selected_service"] = service.name
            values["price"] = stringify(service.price)
            values["upi_link"] = self.upi_link(service)
        if conversation.selected_date:
            values["selected_date"] = format_long_date(date.fromisoformat(conversation.selected_date))
        if conversation.selected_time:
            values["selected_time"] = conversation.selected_time
        return values

    def render(self, text: str, values: dict[str, Any], variables: dict[str, Any] = None) -> str:
        """Fill {{flow variables}} first, then {live values}."""
        if variables:
            text = substitute_tokens(text, variables)
        return fill_placeholders(text, values)
