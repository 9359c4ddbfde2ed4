from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_publisher

router = APIRouter()

@router.get("/channels/{channel}/events")
async def get_channel_events(
    channel: str,
    start: int = 0,
    publisher=Depends(get_publisher)
):
    """Polling fallback for observers that cannot subscribe to the publisher"""
    if not hasattr(publisher, "read_events"):
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="The configured publisher does not keep events"
        )
    if start < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start must be non-negative"
        )

    events, next_index = publisher.read_events(channel, start)
    return {
        "channel": channel,
        "events": [event.to_dict() for event in events],
        "next": next_index,
    }
