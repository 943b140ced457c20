# app/core/dependencies.py

from typing import Optional

from fastapi import Header, HTTPException, status

from app.utils.logger import get_logger

logger = get_logger(__name__)


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
) -> Optional[int]:
    """
    Resolve the acting user id.

    Authentication happens upstream; the gateway forwards the authenticated
    user's id in `X-Actor-Id`. Requests without it are recorded as system
    actions.
    """
    if x_actor_id is None or x_actor_id == "":
        return None
    try:
        return int(x_actor_id)
    except ValueError:
        logger.error("Malformed actor header", value=x_actor_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id must be an integer user id."
        )
