import asyncio
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from typing import Optional

from services.events import BroadcastHub, Done, GenerationEvent
from settings import settings
from state import get_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def format_sse(event: GenerationEvent) -> str:
    """Server-sent event frame; multi-line text becomes several data lines."""
    if isinstance(event, Done):
        return "event: Done\ndata: \n\n"
    text = event.text.replace("\r\n", "\n").replace("\r", "\n")
    data = "".join(f"data: {line}\n" for line in text.split("\n"))
    return f"event: More\n{data}\n"


def _matches(event: GenerationEvent, message_id: Optional[int], conversation_id: Optional[int]) -> bool:
    if message_id is not None and event.message_id != message_id:
        return False
    if conversation_id is not None and event.conversation_id != conversation_id:
        return False
    return True


@router.get("/response/sse")
async def reply_feed(
    request: Request,
    message_id: Optional[int] = None,
    conversation_id: Optional[int] = None,
    hub: BroadcastHub = Depends(get_hub),
):
    # Attach now: anything published before this point is not replayed
    subscription = hub.subscribe()
    keepalive = settings.get_sse_keepalive()

    async def stream():
        with subscription:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await subscription.get(timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if event is None:
                    break
                if not _matches(event, message_id, conversation_id):
                    continue
                yield format_sse(event)
                if isinstance(event, Done):
                    break
        if subscription.missed:
            logger.debug("Live feed missed %d events while lagging", subscription.missed)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
