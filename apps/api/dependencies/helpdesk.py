from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from apps.api.helpdesk import HelpdeskService
from apps.api.services.changes import ChangeFeed


async def get_helpdesk_service(request: Request) -> HelpdeskService:
    service = getattr(request.app.state, "helpdesk_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Help-desk service is not configured")
    return service


async def get_change_feed(request: Request) -> ChangeFeed:
    feed = getattr(request.app.state, "change_feed", None)
    if feed is None:
        raise HTTPException(status_code=503, detail="Change feed is not configured")
    return feed


HelpdeskServiceDep = Annotated[HelpdeskService, Depends(get_helpdesk_service)]
ChangeFeedDep = Annotated[ChangeFeed, Depends(get_change_feed)]
