import logging
import math
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

try:
    from backend.app.billing import BillingError
    from backend.app.routes.admin_billing import router as admin_billing_router
    from backend.app.routes.billing import router as billing_router
    from backend.app.routes.webhooks import router as webhooks_router
    from backend.app.storage import configure_connection_factory
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    from app.billing import BillingError  # type: ignore[no-redef]
    from app.routes.admin_billing import router as admin_billing_router  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.routes.webhooks import router as webhooks_router  # type: ignore[no-redef]
    from app.storage import configure_connection_factory  # type: ignore[no-redef]


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "deskly_db"),
    user=os.getenv("DB_USER", "deskly_user"),
    password=os.getenv("DB_PASSWORD", "deskly_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if origin.strip()]

logger = logging.getLogger("deskly")


def get_conn():
    return psycopg2.connect(**DB_CFG)


configure_connection_factory(get_conn)

app = FastAPI(title="Deskly Back Office API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Billing failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": dict(exc.payload)})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"error": "validation_error", "message": "Invalid request body", "errors": jsonable_encoder(exc.errors())}},
    )


app.include_router(billing_router)
app.include_router(webhooks_router)
app.include_router(admin_billing_router)


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}
