import logging
import time
import uuid
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.routing import APIRoute
from starlette.middleware.base import BaseHTTPMiddleware

load_dotenv(override=False)

from config import APP_NAME, APP_VERSION, CHAT_ENABLED, ENVIRONMENT, LOG_LEVEL  # noqa: E402
from core.logging import configure_logging, request_id_var  # noqa: E402

log_level = configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL)
logger = logging.getLogger(__name__)

from routers.chat import conversations, mentions, messages, presence, stream, typing_events  # noqa: E402
from utils.chat_redis import close_chat_redis  # noqa: E402
from utils.redis_pubsub import close_redis  # noqa: E402

API_DESCRIPTION = """
Chat API

## Authentication
Every /chat endpoint expects the identity provider's access token:
`Authorization: Bearer <access_token>`.

EventSource cannot send headers, so the SSE streams also take `?token=<access_token>`.
"""

app = FastAPI(
    title=APP_NAME,
    description="Realtime chat backend: conversations, messages, typing, presence and mentions",
    version=APP_VERSION,
    swagger_ui_parameters={
        "docExpansion": "none",
        "displayRequestDuration": True,
        "filter": True,
    },
)


def _openapi_with_bearer():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=APP_NAME, version=APP_VERSION, description=API_DESCRIPTION, routes=app.routes)
    components = schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"},
    }
    schema["security"] = [{"bearerAuth": []}]
    app.openapi_schema = schema
    return schema


app.openapi = _openapi_with_bearer


def _caller_for_log(request: Request) -> str:
    """Short profile id of the bearer, or "anonymous". Never rejects the request."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return "anonymous"

    from auth import validate_access_token

    try:
        claims = validate_access_token(token.strip())
    except HTTPException:
        return "anonymous"
    user_id: Optional[str] = claims.get("userId")
    return user_id[:8] if user_id else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One REQUEST and one RESPONSE (or ERROR) line per call, tagged with a short request id."""

    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        request.state.request_id = request_id

        caller = _caller_for_log(request)
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"
        query = f"?{request.url.query}" if request.url.query else ""
        logger.info(f"REQUEST | method={request.method} | path={path}{query} | user_id={caller} | ip={client_ip}")

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"ERROR | method={request.method} | path={path} | error={type(e).__name__}: {e} | "
                f"time={time.perf_counter() - started:.3f}s | user_id={caller}",
                exc_info=True,
            )
            raise

        logger.info(
            f"RESPONSE | method={request.method} | path={path} | status={response.status_code} | "
            f"time={time.perf_counter() - started:.3f}s | user_id={caller}"
        )
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# text/event-stream responses must not pass through compression middleware

app.include_router(stream.router)         # SSE feeds, registered before /conversations/{id}
app.include_router(conversations.router)
app.include_router(messages.router)
app.include_router(typing_events.router)
app.include_router(presence.router)
app.include_router(mentions.router)


@app.on_event("startup")
async def startup_event():
    logger.info(f"{APP_NAME} {APP_VERSION} starting in {ENVIRONMENT} (chat {'enabled' if CHAT_ENABLED else 'disabled'})")

    for route in app.routes:
        if isinstance(route, APIRoute):
            logger.debug(f"{','.join(sorted(route.methods)):8} {route.path}")

    # Deployed databases are migrated with alembic
    if ENVIRONMENT == "development":
        from db import create_tables

        create_tables()


@app.on_event("shutdown")
async def shutdown_event():
    await close_redis()
    await close_chat_redis()
    logger.info(f"{APP_NAME} stopped")


@app.get("/")
async def read_root():
    """Basic API information; doubles as a liveness probe."""
    return {
        "status": "online",
        "message": f"Welcome to the {APP_NAME}!",
        "version": APP_VERSION,
        "environment": ENVIRONMENT,
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
