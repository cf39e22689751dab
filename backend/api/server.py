"""
Storefront Checkout Server
==========================
Production-ready FastAPI server with:
- Checkout endpoint (cart -> PENDING order + payment client secret)
- Stripe webhook endpoint (raw body, signature verified)
- Admin order listing, stats, status updates and event feed
- Customer order history
- Confirmation resend loop in the background
- Health monitoring

pip install fastapi uvicorn pydantic stripe asyncpg aio-pika structlog
"""

import logging
import os
import time
import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn
import structlog

from pipeline.container import CheckoutSystem, build_checkout_system
from pipeline.errors import CheckoutError
from schemas.orders import (
    CheckoutRequest,
    CheckoutResult,
    InventoryLedgerEntry,
    Order,
    OrderPage,
    OrderStats,
    OrderStatus,
    StatusUpdateRequest,
    SystemEvent,
)
from tasks.confirmation_resend import confirmation_resend_loop


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


config = ServerConfig()
VERSION = "1.0.0"

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(config.LOG_LEVEL)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store: str
    payment_gateway: str


class EventsResponse(BaseModel):
    events: list[SystemEvent]


class LedgerResponse(BaseModel):
    product_id: str
    stock: int
    entries: list[InventoryLedgerEntry]


def get_system(request: Request) -> CheckoutSystem:
    return request.app.state.system


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, system: CheckoutSystem = Depends(get_system)):
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=time.monotonic() - request.app.state.started_at,
        store=system.store_backend,
        payment_gateway=system.payments.name,
    )


# =============================================================================
# CHECKOUT & WEBHOOK ENDPOINTS
# =============================================================================

@router.post("/api/orders/checkout", response_model=CheckoutResult, status_code=201)
async def create_checkout(body: CheckoutRequest, system: CheckoutSystem = Depends(get_system)):
    """
    Price the cart, create the payment intent and the PENDING order.

    The storefront confirms payment with the returned client secret; the
    order becomes PAID only when the gateway's webhook arrives.
    """
    return await system.orders.create_checkout(body)


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, system: CheckoutSystem = Depends(get_system)):
    """
    Stripe webhook handler for payment events.
    Needs the raw body: the signature covers the exact bytes sent.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await system.webhooks.receive(payload, sig_header)


# =============================================================================
# ORDER QUERY ENDPOINTS
# =============================================================================

@router.get("/api/orders", response_model=OrderPage)
async def list_orders(
    status: Optional[OrderStatus] = None,
    customer_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    system: CheckoutSystem = Depends(get_system),
):
    """Admin order listing, newest first"""
    return await system.reporting.list_orders(
        status=status, customer_id=customer_id, limit=limit, offset=offset
    )


@router.get("/api/orders/stats", response_model=OrderStats)
async def order_stats(system: CheckoutSystem = Depends(get_system)):
    return await system.reporting.get_stats()


@router.get("/api/orders/mine", response_model=OrderPage)
async def my_orders(
    email: str = Query(..., min_length=3),
    limit: int = 50,
    offset: int = 0,
    system: CheckoutSystem = Depends(get_system),
):
    """Customer order history, newest first; identity comes from the auth layer in front"""
    return await system.reporting.orders_for_customer(email, limit=limit, offset=offset)


@router.get("/api/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, system: CheckoutSystem = Depends(get_system)):
    return await system.reporting.get_order(order_id)


@router.patch("/api/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    system: CheckoutSystem = Depends(get_system),
):
    """Admin status change (ship, deliver, cancel)"""
    return await system.orders.update_status(order_id, body.status)


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@router.get("/api/admin/events", response_model=EventsResponse)
async def recent_events(
    limit: int = 50,
    severity: Optional[str] = None,
    system: CheckoutSystem = Depends(get_system),
):
    """Operational anomalies and notable events, newest first"""
    return EventsResponse(events=await system.reporting.recent_events(limit=limit, severity=severity))


@router.get("/api/products/{product_id}/ledger", response_model=LedgerResponse)
async def product_ledger(product_id: str, system: CheckoutSystem = Depends(get_system)):
    stock, entries = await system.reporting.ledger_for_product(product_id)
    return LedgerResponse(product_id=product_id, stock=stock, entries=entries)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error_body(error_type: str, message: str, details: Optional[dict[str, Any]] = None) -> dict:
    return {"error": {"type": error_type, "message": message, "details": details or {}}}


async def checkout_error_handler(request: Request, exc: CheckoutError):
    logger.info(
        "request_rejected",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_error_body("RequestValidationError", "Invalid request", {"errors": errors}),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content=_error_body("InternalServerError", "Internal server error"),
    )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(system: Optional[CheckoutSystem] = None) -> FastAPI:
    """
    Build the FastAPI app. With ``system`` given (tests), the lifespan uses
    it as-is; otherwise it wires one from the environment and runs the
    confirmation resend loop.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV)
        app.state.started_at = time.monotonic()

        resend_task = None
        owns_system = app.state.system is None
        if owns_system:
            app.state.system = await build_checkout_system()
            resend_task = asyncio.create_task(confirmation_resend_loop(app.state.system))

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if resend_task:
            resend_task.cancel()
            with suppress(asyncio.CancelledError):
                await resend_task
        if owns_system:
            await app.state.system.close()

    app = FastAPI(
        title="Storefront Checkout",
        description="Checkout and order-fulfillment pipeline for the storefront",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.system = system
    app.state.started_at = time.monotonic()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Bind a request ID to every log line of the request"""
        request_id = str(uuid4())[:8]

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id

        return response

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
