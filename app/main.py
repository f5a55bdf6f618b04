"""
Main FastAPI application for the call credit service.
Serves calls, credits, admin, health and metrics.
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import CallCreditError
from app.core.logging import configure_logging, request_id_var
from app.api.routes import admin, calls, credits, health
from app.utils.metrics import router as metrics_router

configure_logging()
logger = logging.getLogger("api")


app = FastAPI(
    title="Call Credit API",
    description="Call credit ledger and call session reconciliation",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or str(uuid4())
    token = request_id_var.set(request_id)
    start = time.time()
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "request_completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 1),
        },
    )
    return response


@app.exception_handler(CallCreditError)
async def call_credit_error_handler(request: Request, exc: CallCreditError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 500 or exc.retryable else logger.info
    log(
        "request_failed",
        extra={
            "path": request.url.path,
            "status_code": exc.status_code,
            "error": exc.error_kind,
            **{k: v for k, v in exc.context.items() if k in ("user_id", "session_id", "external_call_id", "payment_id")},
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "detail": jsonable_encoder(exc.errors()), "retryable": False},
    )


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(calls.router)
app.include_router(credits.router)
app.include_router(admin.router)
app.include_router(metrics_router)
