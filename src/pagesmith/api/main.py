from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from .routers.auth import router as auth_router
from .routers.chat import GENERIC_CHAT_ERROR, router as chat_router
from ..observability.metrics import metrics_middleware_factory, sanitize_path

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, JWT_SECRET, etc.)

logger = logging.getLogger(__name__)

APP_NAME = "Pagesmith API"
APP_VERSION = "0.1.0"

app = FastAPI(title=APP_NAME, version=APP_VERSION)

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(auth_router)
app.include_router(chat_router)

# Also expose the same routers under /api
app.include_router(auth_router, prefix="/api")
app.include_router(chat_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("PAGESMITH_CORS_ORIGINS", "http://localhost:8501").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid input data", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = GENERIC_CHAT_ERROR if sanitize_path(request.url.path).endswith("/chat") else "Internal server error"
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": message})


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": os.getenv("PAGESMITH_STORE_IMPL", "sqlite").lower(),
            "llm_configured": bool(os.getenv("GEMINI_API_KEY")),
        },
    }


@app.get("/")
def root():
    return {"name": APP_NAME, "version": APP_VERSION}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api")
def api_root():
    return {"name": APP_NAME, "version": APP_VERSION}


@app.get("/api/health")
def api_health():
    return _health()
