"""
Facebook Messenger Q&A bot webhook.

This module exposes a FastAPI application (and an AWS Lambda handler via Mangum)
that verifies the Messenger webhook subscription, answers inbound text messages
from a question/answer table using keyword matching, and replies through the
Messenger Send API. The table comes from the built-in Arabic dataset, a JSON
file, merged JSON chunks or an S3 object, selected through configuration.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from messenger_messaging import MetaMessengerClient, verify_subscription
from responder import CATEGORY_PATTERNS, TOPIC_HINTS, Responder
from response_store import EmbeddedSource, ResponseStoreProvider, build_response_source

try:
    from mangum import Mangum
except ImportError:  # pragma: no cover - mangum optional for local runs
    Mangum = None


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("messenger.qabot")


app = FastAPI(
    title="Messenger Q&A Bot",
    version="1.0.0",
    summary="Keyword-matching question/answer bot for a Facebook Messenger page.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

_lambda_adapter = Mangum(app) if Mangum else None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


VERIFY_TOKEN = os.getenv("VERIFY_TOKEN")
PAGE_ACCESS_TOKEN = os.getenv("PAGE_ACCESS_TOKEN")
GRAPH_API_VERSION = os.getenv("GRAPH_API_VERSION", "v19.0")
RESPONSE_SOURCE = os.getenv("RESPONSE_SOURCE", "embedded")
RESPONSES_FILE = os.getenv("RESPONSES_FILE", "responses_optimized.json")
RESPONSES_CHUNK_DIR = os.getenv("RESPONSES_CHUNK_DIR", ".")
RESPONSES_CHUNK_FILES = [
    name.strip()
    for name in os.getenv(
        "RESPONSES_CHUNK_FILES",
        "responses_chunk_1.json,responses_chunk_2.json,responses_chunk_3.json",
    ).split(",")
    if name.strip()
]
RESPONSES_MEGA_FILE = os.getenv("RESPONSES_MEGA_FILE", "responses_mega_optimized.json")
RESPONSES_S3_BUCKET = os.getenv("RESPONSES_S3_BUCKET")
RESPONSES_S3_KEY = os.getenv("RESPONSES_S3_KEY")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
QA_BUILD_INDEX = _env_flag("QA_BUILD_INDEX", "1")
QA_LENGTH_BONUS = _env_flag("QA_LENGTH_BONUS", "0")
QA_FALLBACK_TO_EMBEDDED = _env_flag("QA_FALLBACK_TO_EMBEDDED", "0")
QA_TOPIC_HINTS = _env_flag("QA_TOPIC_HINTS", "0")
QA_CATEGORY_ROUTING = _env_flag("QA_CATEGORY_ROUTING", "0")
GET_STARTED_PAYLOAD = os.getenv("GET_STARTED_PAYLOAD", "GET_STARTED_PAYLOAD")


REPLIES = {
    "welcome": "مرحباً بك! أنا مساعدك الذكي. اسألني عن أي شيء تريد معرفته! 🤖",
    "technical_error": "عذراً، حدث خطأ تقني. حاول مرة أخرى. 🔧",
}


def missing_configuration() -> List[str]:
    missing = []
    if not VERIFY_TOKEN:
        missing.append("VERIFY_TOKEN")
    if not PAGE_ACCESS_TOKEN:
        missing.append("PAGE_ACCESS_TOKEN")
    return missing


def configuration_error_response() -> Optional[JSONResponse]:
    missing = missing_configuration()
    if missing:
        logger.error("Missing environment variables: %s", ", ".join(missing))
        return JSONResponse(
            {
                "error": "Missing environment variables",
                "details": f"{' or '.join(missing)} not set",
            },
            status_code=500,
        )
    if SOURCE_CONFIG_ERROR:
        return JSONResponse(
            {"error": "Invalid response source", "details": SOURCE_CONFIG_ERROR},
            status_code=500,
        )
    return None


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
SOURCE_CONFIG_ERROR: Optional[str] = None
try:
    _response_source = build_response_source(
        RESPONSE_SOURCE,
        file_path=RESPONSES_FILE,
        chunk_dir=RESPONSES_CHUNK_DIR,
        chunk_files=RESPONSES_CHUNK_FILES,
        mega_file=RESPONSES_MEGA_FILE,
        s3_bucket=RESPONSES_S3_BUCKET,
        s3_key=RESPONSES_S3_KEY,
        region=AWS_REGION,
    )
except ValueError as exc:
    logger.error("Invalid response source configuration: %s", exc)
    _response_source = EmbeddedSource()
    SOURCE_CONFIG_ERROR = str(exc)

store_provider = ResponseStoreProvider(
    _response_source,
    build_index=QA_BUILD_INDEX,
    fallback_to_embedded=QA_FALLBACK_TO_EMBEDDED,
)
responder = Responder(
    length_bonus=QA_LENGTH_BONUS,
    topic_hints=TOPIC_HINTS if QA_TOPIC_HINTS else (),
    category_patterns=CATEGORY_PATTERNS if QA_CATEGORY_ROUTING else (),
)
messenger = MetaMessengerClient(PAGE_ACCESS_TOKEN, GRAPH_API_VERSION)


# ---------------------------------------------------------------------------
# Message ingestion
# ---------------------------------------------------------------------------
def extract_events(entries: List[Any]) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        for event in entry.get("messaging") or []:
            if isinstance(event, dict):
                events.append(event)
    return events


def reply_for_event(event: Dict[str, Any]) -> Optional[str]:
    message = event.get("message") or {}
    if message.get("is_echo"):
        return None
    text = message.get("text")
    if text:
        logger.info("User message: %s", text)
        return responder.find_best_response(text, store_provider.get())

    postback = event.get("postback") or {}
    if postback.get("payload") == GET_STARTED_PAYLOAD:
        logger.info("Get started payload received")
        return REPLIES["welcome"]
    return None


async def handle_messaging_event(event: Dict[str, Any]) -> None:
    sender_id = (event.get("sender") or {}).get("id")
    if not sender_id:
        logger.error("No sender ID found in webhook event")
        return

    try:
        # store loading reads files or S3 synchronously
        reply = await run_in_threadpool(reply_for_event, event)
    except Exception as exc:
        logger.exception("Failed to build reply for sender=%s error=%s", sender_id, exc)
        reply = REPLIES["technical_error"]

    if reply is None:
        logger.info("Non-text event from %s, ignoring", sender_id)
        return
    await messenger.send_text(sender_id, reply)


# ---------------------------------------------------------------------------
# FastAPI endpoints
# ---------------------------------------------------------------------------
@app.get("/webhook")
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    config_error = configuration_error_response()
    if config_error:
        return config_error

    logger.info("Verification request mode=%s", hub_mode)
    challenge = verify_subscription(hub_verify_token, hub_challenge, VERIFY_TOKEN)
    if challenge is None:
        logger.warning("Verification failed - token mismatch or missing challenge")
        return PlainTextResponse("Forbidden - Invalid verify token", status_code=403)
    logger.info("Webhook verified successfully")
    return PlainTextResponse(challenge)


@app.post("/webhook")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    config_error = configuration_error_response()
    if config_error:
        return config_error

    try:
        raw_body = await request.body()
        if not raw_body.strip():
            return PlainTextResponse("No body provided", status_code=400)
        try:
            body = json.loads(raw_body)
        except ValueError:
            logger.warning("Rejected webhook with invalid JSON body")
            return PlainTextResponse("Invalid JSON", status_code=400)

        if (
            not isinstance(body, dict)
            or body.get("object") != "page"
            or not isinstance(body.get("entry"), list)
        ):
            logger.warning("Unrecognized webhook format")
            return PlainTextResponse("Not Found", status_code=404)

        events = extract_events(body["entry"])
        for event in events:
            background_tasks.add_task(handle_messaging_event, event)
        logger.info("Queued %d messaging events", len(events))
        return PlainTextResponse("EVENT_RECEIVED")
    except Exception as exc:
        logger.exception("General webhook error: %s", exc)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


@app.get("/healthz")
def healthcheck():
    store = store_provider.peek()
    return {
        "status": "ok",
        "messenger_enabled": messenger.enabled,
        "response_source": store_provider.source.name,
        "store_loaded": store is not None,
        "entries": len(store) if store else 0,
        "keywords": store.keyword_count if store else 0,
    }


def run():
    """Allow `python qabot.py` to launch a development server."""
    import uvicorn

    uvicorn.run(
        "qabot:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=bool(int(os.environ.get("RELOAD", "0"))),
    )


def lambda_handler(event, context):
    if not _lambda_adapter:
        raise RuntimeError("Mangum is not installed. Cannot handle Lambda events.")
    return _lambda_adapter(event, context)


if __name__ == "__main__":
    run()
