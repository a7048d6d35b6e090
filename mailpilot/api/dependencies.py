"""
FastAPI dependencies for the operator API.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from mailpilot.pipeline.runtime import Pipeline

logger = logging.getLogger(__name__)


async def require_operator(
    request: Request,
    x_operator_key: Optional[str] = Header(default=None),
) -> None:
    """
    Reject the request unless X-Operator-Key matches the configured key.
    """
    expected = request.app.state.operator_api_key
    if not x_operator_key or not expected or not hmac.compare_digest(x_operator_key, expected):
        logger.warning(
            "auth.operator_rejected",
            extra={
                "action": "auth.operator_rejected",
                "path": request.url.path,
                "key_present": bool(x_operator_key),
            },
        )
        raise HTTPException(status_code=401, detail="Not authenticated")


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline
