"""Sync routes: append-only operation log over HTTP."""

from fastapi import APIRouter, Query, Request

from ..auth import Authorized, HeaderClientId
from ..config import get_settings
from ..database import Store
from ..logging_config import get_logger, log_sync_operation
from ..models import PendingResponse, PullResponse, PushRequest, PushResponse, WireOperation
from ..rate_limit import limiter, sync_rate_limit

logger = get_logger("opsync.server.sync")
router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Authorized])


@router.post("/push", response_model=PushResponse)
@limiter.limit(sync_rate_limit)
def push_operations(
    request: Request,
    body: PushRequest,
    store: Store,
    header_client_id: HeaderClientId,
):
    """
    Append sealed operations to the log.

    Operations whose id the store already holds are ignored, so a client
    may safely retry a push. Returns the store's highest sequence number and
    how many operations were newly appended.
    """
    client_id = body.clientId or header_client_id
    ops = [op.to_operation() for op in body.ops]
    ack = store.push(ops, client_id=client_id)
    log_sync_operation(client_id, "push", len(ops), ack.cursor)
    return PushResponse(cursor=ack.cursor, count=ack.accepted)


@router.get("/pull", response_model=PullResponse)
@limiter.limit(sync_rate_limit)
def pull_operations(
    request: Request,
    store: Store,
    header_client_id: HeaderClientId,
    cursor: int = Query(0, ge=0),
    limit: int | None = Query(None, ge=1),
    clientId: str | None = None,
):
    """Operations after ``cursor`` in sequence order, excluding the caller's own."""
    settings = get_settings()
    page = min(limit or settings.default_pull_limit, settings.max_pull_limit)
    client_id = clientId or header_client_id
    batch = store.pull(cursor, exclude_client_id=client_id, limit=page)
    log_sync_operation(client_id, "pull", len(batch.ops), batch.next_cursor)
    return PullResponse(
        ops=[WireOperation.from_operation(op) for op in batch.ops],
        cursor=batch.next_cursor,
    )


@router.get("/pending", response_model=PendingResponse)
@limiter.limit(sync_rate_limit)
def pending_count(
    request: Request,
    store: Store,
    header_client_id: HeaderClientId,
    cursor: int = Query(0, ge=0),
    clientId: str | None = None,
):
    """How many operations a pull from ``cursor`` would return (approximate on sheet stores)."""
    return PendingResponse(count=store.count_pending(cursor, exclude_client_id=clientId or header_client_id))
