"""
Operator API routes.

Everything here needs the X-Operator-Key header. Record listings carry
metadata and the reply we sent; inbound message bodies are never stored
or returned.
"""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query

from mailpilot.api.dependencies import get_pipeline, require_operator
from mailpilot.graph.client import MailPermissionError, MailProviderError
from mailpilot.logging.audit import audit, sender_domain
from mailpilot.pipeline.poller import PollerBusyError
from mailpilot.pipeline.runtime import Pipeline
from mailpilot.pipeline.schemas import SendTestMailRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["operator"], dependencies=[Depends(require_operator)])


# --- Poller ---

@router.get("/poller/status")
async def poller_status(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.poller.get_status().model_dump(mode="json")


@router.post("/poller/start")
async def poller_start(pipeline: Pipeline = Depends(get_pipeline)):
    await pipeline.poller.start()
    audit.info("operator.poller.start")
    return pipeline.poller.get_status().model_dump(mode="json")


@router.post("/poller/stop")
async def poller_stop(pipeline: Pipeline = Depends(get_pipeline)):
    await pipeline.poller.stop()
    audit.info("operator.poller.stop")
    return pipeline.poller.get_status().model_dump(mode="json")


@router.post("/poller/run")
async def poller_run(pipeline: Pipeline = Depends(get_pipeline)):
    """Run one cycle now and return its report."""
    try:
        report = await pipeline.poller.run_once()
    except PollerBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Cycle failed: {type(e).__name__}")

    audit.info("operator.poller.run", newly_processed=report.newly_processed)
    return report.model_dump(mode="json")


# --- Records ---

@router.get("/records")
async def list_records(
    hours: float = Query(default=24, gt=0, le=24 * 365),
    limit: int = Query(default=500, ge=1, le=5000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    records = await pipeline.store.list_recent(timedelta(hours=hours), limit=limit)
    return {
        "hours": hours,
        "count": len(records),
        "records": [r.model_dump(mode="json") for r in records],
    }


@router.get("/records/stats")
async def record_stats(
    hours: float = Query(default=24, gt=0, le=24 * 365),
    pipeline: Pipeline = Depends(get_pipeline),
):
    stats = await pipeline.store.stats(timedelta(hours=hours))
    return {"hours": hours, **stats.model_dump()}


@router.delete("/records")
async def clear_records(pipeline: Pipeline = Depends(get_pipeline)):
    removed = await pipeline.store.clear()
    return {"cleared": removed}


# --- Mail ---

@router.post("/mail/test")
async def send_test_mail(
    request: SendTestMailRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Send one message through the mailbox to check the Mail.Send grant.

    Request body (SendTestMailRequest):
    {
        "to": "operator@uni.edu",
        "subject": "optional",
        "body": "optional"
    }
    """
    try:
        await pipeline.mailbox.send_mail(request.to, request.subject, request.body)
    except MailPermissionError as e:
        raise HTTPException(status_code=403, detail=f"Mailbox refused to send (Mail.Send missing?): {e}")
    except MailProviderError as e:
        logger.error(
            "operator.mail.test_failed",
            extra={"action": "operator.mail.test_failed", "error": str(e)[:500]},
        )
        raise HTTPException(status_code=502, detail=f"Send failed: {type(e).__name__}")

    audit.info("operator.mail.test", recipient_domain=sender_domain(request.to))
    return {"sent": True, "to": request.to}
