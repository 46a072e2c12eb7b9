"""HTTP server exposing the bookstore cart as a REST API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import AuthManager
from .bookstore_client import BookstoreClient
from .config import get_settings
from .coordinator import CartCoordinator
from .models import AuthCredentials, MutationOutcome, OutcomeKind

logger = logging.getLogger("bookstore-http-server")

# Global state
auth_manager: AuthManager
bookstore_client: BookstoreClient
coordinator: CartCoordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    global auth_manager, bookstore_client, coordinator

    settings = get_settings()
    logger.info("Starting Bookstore HTTP Server...")
    auth_manager = AuthManager(session_file=settings.session_file)
    bookstore_client = BookstoreClient(
        auth_manager,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout,
        verify=settings.verify_ssl,
    )
    coordinator = CartCoordinator(
        bookstore_client,
        shipping_fee=settings.shipping_fee,
        refresh_after_failures=settings.refresh_after_failures,
    )
    if auth_manager.is_authenticated():
        await coordinator.refresh_snapshot()

    yield

    logger.info("Shutting down Bookstore HTTP Server...")
    await coordinator.wait_idle()
    await bookstore_client.aclose()


app = FastAPI(
    title="Bookstore Cart Server",
    description="HTTP API for an optimistically updated bookstore cart",
    version="0.1.0",
    lifespan=lifespan,
)


# Request/Response Models
class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    success: bool
    message: str


class AddToCartRequest(BaseModel):
    product_id: int
    quantity: int = 1


class QuantityRequest(BaseModel):
    quantity: int


class SelectionRequest(BaseModel):
    selected: bool = True


class CouponRequest(BaseModel):
    code: str = Field(min_length=1)


FAILURE_STATUS = {
    OutcomeKind.VALIDATION_REJECTED: 422,
    OutcomeKind.OUT_OF_STOCK_CONFIRMATION_REQUIRED: 409,
    OutcomeKind.REMOTE_REJECTED: 409,
    OutcomeKind.DECLINED: 409,
    OutcomeKind.NETWORK_FAILURE: 502,
}


def outcome_response(outcome: MutationOutcome) -> JSONResponse:
    """Map an outcome to a JSON response; failures get a 4xx/5xx status."""
    status_code = 200
    if not outcome.success:
        status_code = FAILURE_STATUS.get(outcome.kind, 409)
    return JSONResponse(status_code=status_code, content=outcome.model_dump(mode="json"))


def require_authentication() -> None:
    if not auth_manager.is_authenticated():
        raise HTTPException(status_code=401, detail="Not authenticated")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Bookstore Cart Server",
        "version": "0.1.0",
        "description": "HTTP API for an optimistically updated bookstore cart",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "auth": {"login": "POST /auth/login", "logout": "POST /auth/logout", "status": "GET /auth/status"},
            "cart": {
                "get": "GET /cart",
                "refresh": "POST /cart/refresh",
                "add": "POST /cart/add",
                "update": "PUT /cart/items/{line_id}",
                "remove": "DELETE /cart/items/{line_id}?confirm=true",
                "select": "PUT /cart/items/{line_id}/selection",
                "clear": "DELETE /cart?confirm=true",
                "totals": "GET /cart/totals",
                "coupon": {"apply": "POST /cart/coupon", "remove": "DELETE /cart/coupon"},
            },
        },
        "authenticated": auth_manager.is_authenticated(),
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "authenticated": auth_manager.is_authenticated(),
    }


# Authentication endpoints
@app.post("/auth/login", response_model=LoginResponse)
async def login(request: LoginRequest):
    """Login to the bookstore."""
    try:
        credentials = AuthCredentials(email=request.email, password=request.password)
        success = await bookstore_client.login(credentials)
    except Exception as e:
        logger.error(f"Login error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    if not success:
        return LoginResponse(success=False, message="Login failed. Check your credentials.")

    await coordinator.refresh_snapshot()
    return LoginResponse(success=True, message=f"Successfully logged in as {request.email}")


@app.post("/auth/logout")
async def logout():
    """Logout from the bookstore."""
    bookstore_client.logout()
    return {"success": True, "message": "Successfully logged out"}


@app.get("/auth/status")
async def auth_status():
    """Get authentication status."""
    session = auth_manager.get_session()
    return {
        "authenticated": auth_manager.is_authenticated(),
        "email": session.user_email if auth_manager.is_authenticated() else None,
    }


# Cart endpoints
@app.get("/cart")
async def get_cart():
    """Get the cart as currently displayed, with totals."""
    require_authentication()
    snapshot = coordinator.snapshot()
    return {
        "lines": [line.model_dump(mode="json") for line in snapshot.lines],
        "selected_ids": sorted(snapshot.selected_ids),
        "applied_coupon": snapshot.applied_coupon.model_dump(mode="json") if snapshot.applied_coupon else None,
        "pending_line_ids": [line.id for line in snapshot.lines if coordinator.is_pending(line.id)],
        "totals": coordinator.totals().model_dump(mode="json"),
    }


@app.get("/cart/totals")
async def get_totals():
    """Get totals for the selected lines."""
    require_authentication()
    return coordinator.totals().model_dump(mode="json")


@app.post("/cart/refresh")
async def refresh_cart():
    """Re-fetch the cart from the store."""
    require_authentication()
    return outcome_response(await coordinator.refresh_snapshot())


@app.post("/cart/add")
async def add_to_cart(request: AddToCartRequest):
    """Add a product to the cart."""
    require_authentication()
    return outcome_response(await coordinator.add_item(request.product_id, request.quantity))


@app.put("/cart/items/{line_id}")
async def update_quantity(line_id: int, request: QuantityRequest):
    """Set the quantity of a cart line."""
    require_authentication()
    return outcome_response(await coordinator.set_quantity(line_id, request.quantity))


@app.delete("/cart/items/{line_id}")
async def remove_line(line_id: int, confirm: bool = False):
    """Remove a cart line. Requires ?confirm=true."""
    require_authentication()
    return outcome_response(await coordinator.remove_line(line_id, confirmed=confirm))


@app.put("/cart/items/{line_id}/selection")
async def select_line(line_id: int, request: SelectionRequest):
    """Include or exclude a line from checkout totals."""
    require_authentication()
    return outcome_response(coordinator.toggle_selection(line_id, request.selected))


@app.delete("/cart")
async def clear_cart(confirm: bool = False):
    """Remove every line from the cart. Requires ?confirm=true."""
    require_authentication()
    return outcome_response(await coordinator.clear_all(confirmed=confirm))


@app.post("/cart/coupon")
async def apply_coupon(request: CouponRequest):
    """Apply a coupon to the selected lines."""
    require_authentication()
    return outcome_response(await coordinator.apply_coupon(request.code))


@app.delete("/cart/coupon")
async def remove_coupon():
    """Remove the applied coupon."""
    require_authentication()
    return outcome_response(coordinator.remove_coupon())


def run_http_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: Optional[str] = None):
    """Run the HTTP server."""
    import uvicorn

    log_level = (log_level or get_settings().log_level).lower()
    logging.basicConfig(level=log_level.upper())
    if reload:
        uvicorn.run("bookstore_server.http_server:app", host=host, port=port, reload=True, log_level=log_level)
    else:
        uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    run_http_server()
