"""FastAPI application exposing the sync protocol."""

import logging
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from ..config import Config
from ..models import utc_now
from .authority import Principal, TokenAuthority
from .service import IncomingEvent, InvalidCursorError, RemoteSyncService

logger = logging.getLogger(__name__)


# ==================== Request models ====================


class PushEventModel(BaseModel):
    id: str
    entity_type: str
    # Kept loose so one bad event is rejected on its own instead of failing the batch
    operation: str
    target_id: str
    payload: Any = None
    created_at: datetime | None = None
    sequence: int | None = None


class PushRequest(BaseModel):
    events: list[PushEventModel] = Field(default_factory=list)


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


def create_app(
    config: Config,
    service: RemoteSyncService,
    authority: TokenAuthority,
) -> FastAPI:
    """Create the sync API application.

    Args:
        config: Application configuration.
        service: Sync service backed by the server datastore.
        authority: Token authority used for bearer auth and refresh.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="babysync",
        description="Offline-first sync API for family tracker records",
        version="0.1.0",
    )

    app.state.config = config
    app.state.service = service
    app.state.authority = authority

    bearer = HTTPBearer(auto_error=False)

    def current_principal(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> Principal:
        if credentials is None or not credentials.credentials:
            raise HTTPException(
                status_code=401,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        principal = authority.authenticate(credentials.credentials)
        if principal is None:
            raise HTTPException(
                status_code=401,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return principal

    # ==================== Sync Routes ====================

    @app.post("/sync/push")
    async def sync_push(
        body: PushRequest,
        principal: Principal = Depends(current_principal),
        x_device_id: str = Header(default="default"),
    ) -> dict[str, Any]:
        """Apply a batch of pending events and ack each one."""
        if len(body.events) > config.server.max_push_events:
            raise HTTPException(
                status_code=413,
                detail=f"At most {config.server.max_push_events} events per push",
            )

        events = [IncomingEvent(**event.model_dump()) for event in body.events]
        acks = service.push(principal.user_id, principal.family_id, x_device_id, events)
        return {
            "acks": [ack.to_dict() for ack in acks],
            "server_time": utc_now().isoformat(),
        }

    @app.get("/sync/pull")
    async def sync_pull(
        since: str | None = None,
        limit: int | None = Query(default=None, ge=1),
        principal: Principal = Depends(current_principal),
        x_device_id: str = Header(default="default"),
    ) -> dict[str, Any]:
        """Return records changed after the cursor."""
        page_size = min(limit or config.server.pull_page_size, config.server.max_pull_page_size)
        try:
            page = service.pull(
                principal.user_id, principal.family_id, x_device_id, since, page_size
            )
        except InvalidCursorError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return {
            "records": [record.to_dict() for record in page.records],
            "cursor": page.cursor,
            "has_more": page.has_more,
            "server_time": utc_now().isoformat(),
        }

    @app.get("/sync/status")
    async def sync_status(
        principal: Principal = Depends(current_principal),
        x_device_id: str = Header(default="default"),
    ) -> dict[str, Any]:
        """Last push time and pull cursor of the calling device."""
        state = service.status(principal.user_id, x_device_id)
        return {**state, "server_time": utc_now().isoformat()}

    # ==================== Auth Routes ====================

    @app.post("/auth/refresh")
    async def auth_refresh(body: RefreshRequest | None = None) -> dict[str, Any]:
        """Exchange a refresh token for a new token pair."""
        if body is None or not body.refresh_token:
            raise HTTPException(status_code=401, detail="Missing refresh token")

        tokens = authority.refresh(body.refresh_token)
        if tokens is None:
            raise HTTPException(status_code=401, detail="Refresh token rejected")
        return tokens.to_dict()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check."""
        return {
            "status": "ok",
            "seq": service.datastore.current_seq(),
            "timestamp": utc_now().isoformat(),
        }

    return app
