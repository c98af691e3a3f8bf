"""
Configuration loader for the booking assistant.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./booking_assistant.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "resilient"
    store_timeout_seconds: float = 5.0                 # bound on every durable-store call


@dataclass
class ServiceConfig:
    name: str
    price: float
    description: str = ""
    is_active: bool = True


def _default_services() -> list[ServiceConfig]:
    return [
        ServiceConfig(name="Haircut", price=200),
        ServiceConfig(name="Facial", price=500),
        ServiceConfig(name="Massage", price=800),
    ]


@dataclass
class BookingConfig:
    business_name: str = "Spark Salon"
    upi_id: str = "sparksalon@upi"
    currency: str = "INR"
    currency_symbol: str = "₹"
    date_window_days: int = 7
    time_slots: list[str] = field(default_factory=lambda: [
        "10:00 AM", "11:30 AM", "02:00 PM", "03:30 PM", "05:00 PM",
    ])
    services: list[ServiceConfig] = field(default_factory=_default_services)
    payment_keywords: list[str] = field(default_factory=lambda: ["paid", "payment", "done"])
    restart_keywords: list[str] = field(default_factory=lambda: ["hi", "hello"])


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    verify_token: str = ""
    timeout_seconds: float = 10.0


@dataclass
class TemplateConfig:
    strict_instantiation: bool = False
    extra_paths: list[str] = field(default_factory=list)


@dataclass
class Settings:
    app_name: str = "BookingAssistant"
    debug: bool = False
    default_tenant_id: str = "default"
    timezone: str = "Asia/Kolkata"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.default_tenant_id = raw.get("default_tenant_id", settings.default_tenant_id)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_timeout_seconds=float(db.get("store_timeout_seconds",
                                                   settings.database.store_timeout_seconds)),
            )

        if "booking" in raw:
            bk = raw["booking"]
            defaults = BookingConfig()
            services = defaults.services
            if "services" in bk:
                services = [
                    ServiceConfig(
                        name=s["name"],
                        price=float(s["price"]),
                        description=s.get("description", ""),
                        is_active=s.get("is_active", True),
                    )
                    for s in bk["services"]
                ]
            settings.booking = BookingConfig(
                business_name=bk.get("business_name", defaults.business_name),
                upi_id=bk.get("upi_id", defaults.upi_id),
                currency=bk.get("currency", defaults.currency),
                currency_symbol=bk.get("currency_symbol", defaults.currency_symbol),
                date_window_days=int(bk.get("date_window_days", defaults.date_window_days)),
                time_slots=bk.get("time_slots", defaults.time_slots),
                services=services,
                payment_keywords=bk.get("payment_keywords", defaults.payment_keywords),
                restart_keywords=bk.get("restart_keywords", defaults.restart_keywords),
            )

        if "whatsapp" in raw:
            wa = raw["whatsapp"]
            settings.whatsapp = WhatsAppConfig(
                phone_number_id=str(wa.get("phone_number_id", "")),
                access_token=wa.get("access_token", ""),
                api_version=wa.get("api_version", "v18.0"),
                base_url=wa.get("base_url", "https://graph.facebook.com"),
                verify_token=wa.get("verify_token", ""),
                timeout_seconds=float(wa.get("timeout_seconds", 10.0)),
            )

        if "templates" in raw:
            tp = raw["templates"]
            settings.templates = TemplateConfig(
                strict_instantiation=tp.get("strict_instantiation", False),
                extra_paths=tp.get("extra_paths", []),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
