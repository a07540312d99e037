"""Controller stack for one UI session, built from Settings."""

from typing import Optional

import httpx

from .api import ApiClient
from .config import Settings, load_settings
from .guard import DestructiveOperationGuard
from .ingestion import IngestionPipeline
from .models import CurrentUser
from .notifications import NotificationBus
from .routes import RouteGate
from .session import SessionGuard
from .store import RecordStore
from .sync import SyncController


class TrackerClient:
    """
    Wires session, store, sync, ingestion and delete guard together.

    Args:
        settings: Runtime settings; loaded from the environment when omitted
        transport: Optional httpx transport (e.g. an ASGI app in tests)
        path: Initial route for the route gate
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 path: Optional[str] = None):
        self.settings = settings or load_settings()
        self.session = SessionGuard()
        self.api = ApiClient(
            self.session,
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
            transport=transport,
        )
        self.store = RecordStore()
        self.gate = RouteGate(self.settings.sync_allowed_routes, current_path=path)
        self.bus = NotificationBus(default_duration_ms=self.settings.notification_duration_ms)
        self.sync = SyncController(
            self.session, self.api, self.store, self.gate, self.bus,
            debounce_ms=self.settings.refresh_debounce_ms,
        )
        self.pipeline = IngestionPipeline(
            self.api, self.session, sync=self.sync, bus=self.bus,
            max_upload_size=self.settings.max_upload_size,
        )
        self.guard = DestructiveOperationGuard(
            self.api, self.store, sync=self.sync, bus=self.bus,
            phrase=self.settings.delete_all_phrase,
        )

    def login(self, token: str, user: CurrentUser) -> None:
        self.session.login(token, user)

    def logout(self) -> None:
        self.session.logout()

    async def __aenter__(self) -> "TrackerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.sync.cancel_pending_refresh()
        await self.api.aclose()
