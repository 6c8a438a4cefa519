from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from src.domain.outcomes import relay_http_response
from src.observability import incr_metric, log_event
from src.services.relay import relay_typeform_submission


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@router.post("/typeform")
async def ingest_typeform_webhook(request: Request):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="typeform")
    log_event(
        "typeform_webhook_received",
        request_id=req_id,
        content_length=len(raw_body),
        signed=bool(request.headers.get("Typeform-Signature")),
    )

    outcome = await run_in_threadpool(
        relay_typeform_submission,
        raw_body,
        signature_header=request.headers.get("Typeform-Signature"),
        request_id=req_id,
    )
    status_code, body = relay_http_response(outcome)
    return JSONResponse(status_code=status_code, content=body)
