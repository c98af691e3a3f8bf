"""
Application wiring — builds every collaborator from Settings.

    app = BookingApp.from_settings()
    await app.start()
    reply = await app.handle_webhook(payload)      # WhatsApp Cloud API body
    await app.stop()

The HTTP layer that receives webhooks is not part of this package; any
server can call handle_webhook / verify_webhook.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import MessagingGateway, RecordingGateway
from channels.whatsapp import WhatsAppGateway, parse_webhook, verify_webhook
from config.settings import Settings, get_settings
from core.booking import BookingStateMachine
from core.catalog import ServiceCatalog
from core.engine import ConversationEngine
from core.renderer import BookingRenderer
from core.static_flow import build_static_flow
from database.session import close_db, init_db
from database.store_base import BaseStore
from database.store_factory import create_store
from flows.cache import FlowCache
from flows.repository import FlowRepository
from flows.sync import FlowSyncService
from flows.templates import TemplateInstantiator, TemplateLibrary
from models.schemas import EngineReply

logger = structlog.get_logger()

_SQL_BACKENDS = ("sql", "resilient")


class BookingApp:

    def __init__(
        self,
        settings: Settings,
        store: BaseStore,
        gateway: MessagingGateway,
        library: TemplateLibrary = None,
    ):
        self.settings = settings
        self.store = store
        self.gateway = gateway
        self.library = library or TemplateLibrary.with_builtins(settings.templates.extra_paths)

        self.cache = FlowCache()
        self.repository = FlowRepository(store, self.cache)
        self.instantiator = TemplateInstantiator(
            self.library, self.repository, strict=settings.templates.strict_instantiation,
        )
        self.sync = FlowSyncService(self.cache, self.repository, self.library)

        catalog = ServiceCatalog.from_config(settings.booking)
        booking = BookingStateMachine(
            renderer=BookingRenderer(settings.booking, catalog),
            fallback_flow=build_static_flow(settings.booking, self.library),
            restart_keywords=settings.booking.restart_keywords,
        )
        self.engine = ConversationEngine(
            store=store,
            flow_cache=self.cache,
            gateway=gateway,
            booking=booking,
            repository=self.repository,
            settings=settings,
        )

    @classmethod
    def from_settings(cls, settings: Settings = None) -> BookingApp:
        settings = settings or get_settings()
        store = create_store({
            "store_backend": settings.database.store_backend,
            "store_timeout_seconds": settings.database.store_timeout_seconds,
        })
        wa = settings.whatsapp
        if wa.phone_number_id and wa.access_token and not wa.access_token.startswith("${"):
            gateway: MessagingGateway = WhatsAppGateway(wa)
        else:
            logger.warning("whatsapp_not_configured", fallback="recording")
            gateway = RecordingGateway()
        return cls(settings, store, gateway)

    # ── Lifecycle ─────────────────────────────────────

    async def start(self):
        backend = self.settings.database.store_backend
        if backend in _SQL_BACKENDS:
            try:
                await init_db(self.settings.database.url)
            except Exception as e:
                if backend == "sql":
                    raise
                # The resilient store degrades on its first call.
                logger.warning("database_init_failed", backend=backend, error=str(e))
        logger.info("booking_app_started",
                    store_backend=backend,
                    gateway=self.gateway.name,
                    templates=len(self.library))

    async def stop(self):
        await self.gateway.close()
        if self.settings.database.store_backend in _SQL_BACKENDS:
            await close_db()
        logger.info("booking_app_stopped")

    # ── Webhooks ──────────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        return verify_webhook(params, self.settings.whatsapp.verify_token)

    async def handle_webhook(self, payload: dict[str, Any], tenant_id: str = None) -> Optional[EngineReply]:
        message = parse_webhook(payload)
        if message is None:
            return None
        return await self.engine.handle_inbound(tenant_id or self.settings.default_tenant_id, message)
