from uuid import uuid4

from fastapi import FastAPI, Request

from src.config import settings
from src.observability import configure_logging
from src.routers import webhooks

configure_logging(settings.log_level)

app = FastAPI(title="Typeform Klaviyo Relay", version="0.1.0")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
# path existing Typeform forms still post to
app.add_api_route(
    "/api/typeform-quiz",
    webhooks.ingest_typeform_webhook,
    methods=["POST"],
    tags=["webhooks"],
)


@app.get("/")
async def root():
    return {"status": "ok", "service": "typeform-klaviyo-relay"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
