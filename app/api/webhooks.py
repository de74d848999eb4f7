"""Payment gateway webhook routes."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from app.api.deps import get_db
from app.errors import error_response
from app.services.billing.ledger import ALREADY_PROCESSED, payment_events

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    """Signature-verified; no other auth.

    Handler failures are recorded on the ledger and answered with 500.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(payment_events.ingest, db, body, signature)

    if not result.ok:
        return error_response(
            request,
            500,
            "event_processing_failed",
            result.error or "Event processing failed",
            {"event_id": result.event_id, "event_type": result.event_type},
        )
    message = (
        "Event already processed"
        if result.status == ALREADY_PROCESSED
        else "Webhook processed"
    )
    return JSONResponse(
        status_code=200, content={"message": message, "event_id": result.event_id}
    )
