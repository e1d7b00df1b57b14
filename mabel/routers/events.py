"""Delivery endpoint for the external event bus."""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, status

from mabel.schemas import EventDelivery
from mabel.services.dispatch import queue
from mabel.settings.config import settings
from mabel.utils import envelope

router = APIRouter(prefix="/api/events", tags=["events"])
logger = logging.getLogger(__name__)


def _authorized(authorization: Optional[str]) -> bool:
    secret = settings.EVENT_SIGNING_SECRET
    if not secret:
        return False
    expected = f"Bearer {secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


@router.post("")
async def deliver_event(payload: EventDelivery, authorization: Optional[str] = Header(None)):
    if not _authorized(authorization):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid event signature")
    if not queue.has(payload.name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown event {payload.name}")
    logger.info("event delivered: %s", payload.name)
    await queue.run(payload.name, payload.data)
    return envelope({"name": payload.name, "handled": True})
