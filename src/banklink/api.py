"""User-facing service surface.

``BankLinkService`` is what a web handler or the CLI calls. It takes an
already verified user id (session issuance lives elsewhere), wires the
components from settings and returns only canonical models. Errors raised from
here are ``BankLinkError`` subclasses whose ``user_message`` is safe to show.
"""

import logging
from collections.abc import Mapping
from typing import Any

from .config import BankLinkSettings, get_settings
from .connections import ConnectionManager
from .deadline import Deadline
from .errors import AuthError, BankLinkError
from .models import (
    CachedSummary,
    Connection,
    ConnectionResult,
    DailySnapshot,
    DisconnectResult,
    ProviderId,
    SyncResult,
)
from .providers.plaid import PlaidAdapter
from .providers.scraper import ScraperAdapter
from .store import DocumentStore, DuckDBDocumentStore
from .summary import SummaryService, history_range
from .vault import CredentialVault

logger = logging.getLogger(__name__)


def error_payload(error: BankLinkError) -> dict[str, Any]:
    """Response body for a failed request; never includes upstream text."""
    return {
        "success": False,
        "error": error.user_message,
        "errorType": type(error).__name__,
        "retryable": error.retryable,
    }


class BankLinkService:
    """Entry point for every user-scoped banking operation."""

    def __init__(
        self,
        store: DocumentStore,
        connections: ConnectionManager,
        summary: SummaryService,
    ):
        self.store = store
        self.connections = connections
        self.summary = summary

    @classmethod
    def from_settings(cls, settings: BankLinkSettings | None = None) -> "BankLinkService":
        """Build every component from configuration, with no shared globals."""
        settings = settings or get_settings()
        store = DuckDBDocumentStore.from_settings(settings)
        vault = CredentialVault.from_config(settings.vault)
        summary = SummaryService(store, settings.cache)

        plaid: PlaidAdapter | None = None
        if settings.plaid.client_id and settings.plaid.secret:
            plaid = PlaidAdapter(settings.plaid, vault)
        else:
            logger.info("Plaid credentials not configured; Plaid provider disabled")

        connections = ConnectionManager(
            store,
            vault,
            plaid=plaid,
            scraper=ScraperAdapter(settings.scraper),
            summary=summary,
        )
        return cls(store, connections, summary)

    def close(self) -> None:
        self.store.close()

    @staticmethod
    def _require_user(user_id: str | None) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise AuthError("Missing or invalid user id")
        return user_id

    def connect(
        self,
        user_id: str,
        provider: ProviderId | str,
        payload: Mapping[str, Any],
        deadline: Deadline | None = None,
    ) -> ConnectionResult:
        return self.connections.connect(self._require_user(user_id), provider, payload, deadline)

    def disconnect(
        self, user_id: str, connection_id: str, deadline: Deadline | None = None
    ) -> DisconnectResult:
        return self.connections.disconnect(self._require_user(user_id), connection_id, deadline)

    def sync(
        self, user_id: str, connection_id: str, deadline: Deadline | None = None
    ) -> SyncResult:
        return self.connections.sync(self._require_user(user_id), connection_id, deadline)

    def list_connections(self, user_id: str) -> list[Connection]:
        return self.connections.list_connections(self._require_user(user_id))

    def create_link_token(
        self,
        user_id: str,
        mode: str = "create",
        connection_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> str:
        return self.connections.get_link_token(
            self._require_user(user_id), mode, connection_id, deadline
        )

    def get_overview(self, user_id: str) -> CachedSummary:
        return self.summary.get_summary(self._require_user(user_id))

    def get_history(self, user_id: str, period: str = "30d") -> list[DailySnapshot]:
        user_id = self._require_user(user_id)
        start, end = history_range(period, self.summary.clock().date())
        return self.summary.get_snapshots(user_id, start, end)

    def save_snapshot(self, user_id: str) -> DailySnapshot:
        return self.summary.save_daily_snapshot(self._require_user(user_id))
