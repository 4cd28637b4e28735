"""FastAPI server implementation for the Fulfillment Service."""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from confluent_kafka.admin import AdminClient
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .channels import authorize_channel
from .config import Settings
from .exceptions import ErrorKind, FulfillmentError
from .inventory import InventoryLedger
from .locks import LockCoordinator
from .logger import logger
from .notifications import InMemoryNotifier, KafkaNotifier, NotificationPort
from .rate_limit import FixedWindowRateLimiter, RateLimitExceeded
from .schemas import ChannelAuthRequest, CreateOrderRequest, ErrorResponse, Order, RestockRequest, StockLevel
from .service import OrderService

TRACE_HEADER = "X-Trace-Id"

# ErrorKind -> (HTTP status, error_code, fixed message or None to use the exception text)
ERROR_TABLE: dict[ErrorKind, tuple[int, str, Optional[str]]] = {
    ErrorKind.INSUFFICIENT_STOCK: (409, "INSUFFICIENT_STOCK", None),
    ErrorKind.LOCK_CONFLICT: (409, "LOCK_CONFLICT", "Could not acquire lock. Please retry."),
    ErrorKind.ORDER_NOT_FOUND: (404, "NOT_FOUND", "Order not found."),
    ErrorKind.UNKNOWN_SKU: (404, "NOT_FOUND", None),
    ErrorKind.ORDER_NOT_CANCELLABLE: (422, "INVALID_TRANSITION", None),
    ErrorKind.INVALID_TRANSITION: (422, "INVALID_TRANSITION", None),
}

HTTP_ERROR_CODES = {
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


class FulfillmentState:
    """Class to manage fulfillment service state."""

    def __init__(self) -> None:
        """Initialize an unconfigured state."""
        self.settings: Settings = Settings()
        self.notifier: NotificationPort = InMemoryNotifier()
        self.service: Optional[OrderService] = None
        self.limiter: Optional[FixedWindowRateLimiter] = None

    def configure(self, settings: Settings, notifier: Optional[NotificationPort] = None) -> None:
        """Build a fresh ledger, service and rate limiter.

        Args:
            settings: Settings to apply
            notifier: Port for status changes, defaults to an in-memory recorder
        """
        self.settings = settings
        self.notifier = notifier if notifier is not None else InMemoryNotifier()
        locks = LockCoordinator(default_timeout=settings.lock_timeout_seconds)
        ledger = InventoryLedger(locks)
        for sku, quantity in settings.initial_stock.items():
            ledger.add_stock(sku, quantity)
        self.service = OrderService(ledger, notifier=self.notifier)
        self.limiter = FixedWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
        logger.info(
            f"Service configured | skus={len(settings.initial_stock)} | "
            f"lock_timeout={settings.lock_timeout_seconds}s | rate_limit={settings.rate_limit_requests}"
        )

    @property
    def ledger(self) -> InventoryLedger:
        return self.service.ledger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    settings = state.settings
    if settings.kafka_bootstrap_servers:
        notifier = KafkaNotifier(settings.kafka_bootstrap_servers, topic=settings.order_events_topic)
        state.configure(settings, notifier=notifier)
        logger.info(f"Publishing order events to Kafka topic {settings.order_events_topic}")

    yield

    if isinstance(state.notifier, KafkaNotifier):
        state.notifier.close()
    logger.info("Shutdown complete")


# Initialize FastAPI app and state
app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
state = FulfillmentState()
state.configure(Settings.from_env())


def _error_response(status_code: int, message: str, error_code: str, headers: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(message=message, error_code=error_code)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Tag the request's log records and response with a trace id."""
    trace_id = request.headers.get(TRACE_HEADER) or uuid.uuid4().hex
    request.state.trace_id = trace_id
    with logger.contextualize(trace_id=trace_id):
        response = await call_next(request)
    response.headers[TRACE_HEADER] = trace_id
    return response


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    """Map domain errors to the JSON error contract."""
    status_code, error_code, message = ERROR_TABLE[exc.kind]
    logger.info(f"Domain error | path={request.url.path} | code={error_code} | {exc.message}")
    return _error_response(status_code, message or exc.message, error_code)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Respond 429 with the seconds left in the client's window."""
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            message="Too many requests. Please slow down.",
            error_code="RATE_LIMIT_EXCEEDED",
            retry_after=exc.retry_after,
        ).model_dump(),
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Summarize request validation failures."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request."
    return _error_response(422, message, "VALIDATION_ERROR")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Give plain HTTP errors the same body shape as domain errors."""
    error_code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return _error_response(exc.status_code, str(exc.detail), error_code, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Mask unexpected errors unless running in debug mode.

    This handler runs outside ``trace_id_middleware``, so it sets the trace header itself.
    """
    trace_id = getattr(request.state, "trace_id", None) or request.headers.get(TRACE_HEADER) or uuid.uuid4().hex
    with logger.contextualize(trace_id=trace_id):
        logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}")
    message = str(exc) if state.settings.debug else "An unexpected error occurred."
    return _error_response(500, message, "INTERNAL_ERROR", headers={TRACE_HEADER: trace_id})


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Resolve the caller from the ``X-User-Id`` header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    return x_user_id.strip()


def enforce_rate_limit(request: Request, x_user_id: Optional[str] = Header(None)) -> None:
    """Count the request against the caller's window."""
    client = (x_user_id or "").strip() or (request.client.host if request.client else "anonymous")
    state.limiter.hit(client)


def get_service() -> OrderService:
    return state.service


router = APIRouter(prefix="/api", dependencies=[Depends(enforce_rate_limit)])


@router.post("/orders", response_model=Order, status_code=status.HTTP_201_CREATED)
def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(current_user),
    service: OrderService = Depends(get_service),
):
    """Reserve stock and create a pending order.

    Args:
        request: Line items of the order
        user_id: The ordering user

    Returns:
        Order: The created order
    """
    logger.info(f"Received new order | user_id={user_id} | lines={len(request.items)}")
    return service.create_order(user_id, request.items)


@router.get("/orders", response_model=list[Order])
def list_orders(user_id: str = Depends(current_user), service: OrderService = Depends(get_service)):
    """List the caller's orders."""
    return service.list_orders(user_id)


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, user_id: str = Depends(current_user), service: OrderService = Depends(get_service)):
    """Get one of the caller's orders."""
    return service.get_order(order_id, user_id)


@router.post("/orders/{order_id}/cancel", response_model=Order)
def cancel_order(order_id: str, user_id: str = Depends(current_user), service: OrderService = Depends(get_service)):
    """Cancel one of the caller's orders and return its stock."""
    return service.cancel_order(order_id, user_id)


@router.post("/orders/{order_id}/confirm", response_model=Order)
def confirm_order(order_id: str, user_id: str = Depends(current_user), service: OrderService = Depends(get_service)):
    """Confirm a pending order."""
    logger.info(f"Confirm requested | order_id={order_id} | by={user_id}")
    return service.confirm_order(order_id)


@router.post("/orders/{order_id}/ship", response_model=Order)
def ship_order(order_id: str, user_id: str = Depends(current_user), service: OrderService = Depends(get_service)):
    """Ship a confirmed order."""
    logger.info(f"Shipment requested | order_id={order_id} | by={user_id}")
    return service.ship_order(order_id)


@router.get("/inventory", response_model=list[StockLevel])
def list_inventory():
    """List the stock of every SKU."""
    return state.ledger.snapshot()


@router.get("/inventory/{sku}", response_model=StockLevel)
def get_inventory(sku: str):
    """Get the stock of one SKU."""
    return state.ledger.get(sku.strip().upper())


@router.post("/inventory", response_model=StockLevel)
def restock(request: RestockRequest, user_id: str = Depends(current_user)):
    """Add units to a SKU."""
    logger.info(f"Restock requested | sku={request.sku} | quantity={request.quantity} | by={user_id}")
    return state.ledger.add_stock(request.sku, request.quantity)


@router.post("/broadcasting/auth")
def authorize_broadcast(request: ChannelAuthRequest, user_id: str = Depends(current_user)):
    """Authorize a subscription to a private channel."""
    if not authorize_channel(user_id, request.channel_name):
        raise HTTPException(status_code=403, detail="Not authorized for this channel.")
    return {"authorized": True, "channel_name": request.channel_name}


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
async def readiness_check():
    """Check if the service is ready to handle requests."""
    servers = state.settings.kafka_bootstrap_servers
    if not servers:
        return {"status": "ready", "kafka": "disabled"}
    try:
        admin = AdminClient({"bootstrap.servers": servers})
        cluster_metadata = admin.list_topics(timeout=5)
        if cluster_metadata is not None:
            return {"status": "ready", "kafka": "connected"}
    except Exception as e:
        logger.error(f"Kafka connection failed: {e}")
    return {"status": "not ready", "kafka": "disconnected"}


app.include_router(router)
logger.info("API router mounted.")
