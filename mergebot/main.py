import hmac
import hashlib
import json
import os
import logging
from typing import Optional
from fastapi import BackgroundTasks, FastAPI, Request, Response, Header, HTTPException
import redis

from .config import SETTINGS
from .metrics import (
    event_handler_errors_total,
    metrics_response,
    webhook_requests_total,
    webhook_invalid_signatures_total,
    webhook_parse_failures_total,
)
from .handlers import EventHandlers
from .store import Store

logging.basicConfig(level=SETTINGS.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Mergebot Webhook Service", version=SETTINGS.service_version)

_handlers: Optional[EventHandlers] = None


def get_handlers() -> EventHandlers:
    global _handlers
    if _handlers is None:
        _handlers = EventHandlers(store=Store())
    return _handlers


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": SETTINGS.service_version}


@app.get("/readyz")
async def readyz():
    try:
        Store().r.ping()
    except redis.RedisError:
        logger.warning("Readiness check failed: redis unavailable", exc_info=True)
        raise HTTPException(status_code=503, detail="redis unavailable")
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    content_type, data = metrics_response()
    return Response(content=data, media_type=content_type)


def verify_signature(secret: str, body: bytes, signature256: Optional[str]) -> bool:
    if not signature256:
        return False
    try:
        algo, sig = signature256.split("=", 1)
        if algo != "sha256":
            return False
    except ValueError:
        return False
    mac = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    expected = mac.hexdigest()
    return hmac.compare_digest(expected, sig)


def dispatch(event: str, delivery: Optional[str], payload: dict) -> None:
    """Run the event handler after the response is sent; merge and update loops continue on their own threads."""
    logger.debug("Dispatching event=%s delivery=%s", event, delivery)
    try:
        get_handlers().handle(event, payload)
    except Exception:
        event_handler_errors_total.labels(event=event).inc()
        logger.exception("Unhandled error for event=%s delivery=%s", event, delivery)


@app.post("/webhook")
async def webhook(
    request: Request,
    background: BackgroundTasks,
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    event = x_github_event or "unknown"
    action = "unknown"
    body = await request.body()

    # Resolve the secret at request time so environment overrides apply
    secret = (SETTINGS.webhook_secret or os.getenv("WEBHOOK_SECRET", "")).strip()
    if not secret or not verify_signature(secret, body, x_hub_signature_256):
        webhook_invalid_signatures_total.inc()
        webhook_requests_total.labels(event=event, action=action, code=str(401)).inc()
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        webhook_parse_failures_total.labels(event=event).inc()
        webhook_requests_total.labels(event=event, action=action, code=str(400)).inc()
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        webhook_parse_failures_total.labels(event=event).inc()
        webhook_requests_total.labels(event=event, action=action, code=str(400)).inc()
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    action = payload.get("action", "unknown")
    if get_handlers().handles(event):
        background.add_task(dispatch, event, x_github_delivery, payload)
    else:
        logger.debug("Ignoring event=%s delivery=%s", event, x_github_delivery)

    code = 202
    webhook_requests_total.labels(event=event, action=action, code=str(code)).inc()
    return Response(status_code=code)
