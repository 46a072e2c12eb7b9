"""Bookstore REST API client."""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

import httpx

from .auth import AuthManager
from .errors import NetworkFailure, RemoteRejected, SessionExpired
from .models import AppliedCoupon, AuthCredentials, CartLine, DiscountType, Product

logger = logging.getLogger(__name__)


class RemoteCartService(ABC):
    """Authoritative cart operations offered by the store."""

    @abstractmethod
    async def fetch_cart(self) -> list[CartLine]:
        """Get every line in the shopper's cart"""

    @abstractmethod
    async def update_line_quantity(self, line_id: int, quantity: int) -> CartLine:
        """Set a line's quantity and return the line as the store saved it"""

    @abstractmethod
    async def remove_line(self, line_id: int) -> None:
        """Remove one line"""

    @abstractmethod
    async def clear_cart(self) -> None:
        """Remove every line"""

    @abstractmethod
    async def add_to_cart(self, product_id: int, quantity: int) -> list[CartLine]:
        """Add a product and return the resulting cart"""

    @abstractmethod
    async def apply_coupon(self, code: str, order_amount: Decimal) -> AppliedCoupon:
        """Validate a coupon against an order amount"""


class BookstoreClient(RemoteCartService):
    """Client for the bookstore REST API."""

    CART_PATH = "/Cart"
    ADD_PATH = "/Cart/add"
    UPDATE_PATH = "/Cart/update/{id}"
    REMOVE_PATH = "/Cart/remove/{id}"
    CLEAR_PATH = "/Cart/clear"
    APPLY_COUPON_PATH = "/Coupon/apply"
    LOGIN_PATH = "/Auth/login"

    def __init__(
        self,
        auth_manager: AuthManager,
        base_url: str = "https://localhost:7275/api",
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the bookstore client.

        Args:
            auth_manager: Authentication manager instance
            base_url: Root of the store's REST API
            timeout: Per-request timeout in seconds
            verify: Verify the API's TLS certificate
            transport: Custom httpx transport (used by tests)
        """
        self.auth_manager = auth_manager
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    def _auth_headers(self) -> dict[str, str]:
        token = self.auth_manager.get_token()
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """
        Send a request and unwrap the store's response envelope.

        Returns:
            The envelope's ``data`` member

        Raises:
            NetworkFailure: If the request did not complete
            SessionExpired: If the store answered 401
            RemoteRejected: If the store answered with an error or success=false
        """
        logger.info(f"{method} {url}")
        try:
            response = await self.client.request(method, url, headers=self._auth_headers(), **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out: {e}")
            raise NetworkFailure("The store took too long to respond. Please try again.") from e
        except httpx.RequestError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise NetworkFailure() from e

        logger.info(f"{method} {url} -> {response.status_code}")

        if response.status_code == 401:
            self.auth_manager.clear_session()
            raise SessionExpired()

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}

        if response.is_error or not payload.get("success", False):
            message = payload.get("message") or f"Request failed with status {response.status_code}"
            raise RemoteRejected(
                message,
                status_code=payload.get("statusCode", response.status_code),
                errors=payload.get("errors"),
            )

        return payload.get("data")

    async def login(self, credentials: AuthCredentials) -> bool:
        """
        Authenticate with the store and save the bearer token.

        Args:
            credentials: User credentials (email and password)

        Returns:
            True if login successful, False if the store refused the credentials

        Raises:
            NetworkFailure: If the store could not be reached
        """
        logger.info(f"=== LOGIN: email={credentials.email} ===")
        try:
            data = await self._request(
                "POST",
                self.LOGIN_PATH,
                json={"email": credentials.email, "password": credentials.password},
            )
        except RemoteRejected as e:
            logger.error(f"Login failed: {e.message}")
            return False

        token = (data or {}).get("token")
        if not token:
            logger.error("Login failed: no token in response")
            return False

        self.auth_manager.save_session(
            access_token=token,
            refresh_token=data.get("refreshToken"),
            user_email=credentials.email,
        )
        logger.info("Login successful")
        return True

    def logout(self) -> None:
        """Forget the saved session."""
        self.auth_manager.clear_session()

    async def fetch_cart(self) -> list[CartLine]:
        data = await self._request("GET", self.CART_PATH)
        return self._parse_lines(data)

    async def update_line_quantity(self, line_id: int, quantity: int) -> CartLine:
        logger.info(f"=== UPDATE CART LINE: line_id={line_id}, quantity={quantity} ===")
        data = await self._request(
            "PUT",
            self.UPDATE_PATH.format(id=line_id),
            json={"quantity": quantity},
        )
        if not isinstance(data, dict):
            raise RemoteRejected("The store returned no cart line")
        return self._parse_line(data)

    async def remove_line(self, line_id: int) -> None:
        logger.info(f"=== REMOVE CART LINE: line_id={line_id} ===")
        await self._request("DELETE", self.REMOVE_PATH.format(id=line_id))

    async def clear_cart(self) -> None:
        logger.info("=== CLEAR CART ===")
        await self._request("DELETE", self.CLEAR_PATH)

    async def add_to_cart(self, product_id: int, quantity: int) -> list[CartLine]:
        logger.info(f"=== ADD TO CART: product_id={product_id}, quantity={quantity} ===")
        data = await self._request(
            "POST",
            self.ADD_PATH,
            json={"productId": product_id, "quantity": quantity},
        )
        if isinstance(data, list):
            return self._parse_lines(data)
        # Some deployments answer with the single added line only
        return await self.fetch_cart()

    async def apply_coupon(self, code: str, order_amount: Decimal) -> AppliedCoupon:
        logger.info(f"=== APPLY COUPON: code={code}, order_amount={order_amount} ===")
        data = await self._request(
            "POST",
            self.APPLY_COUPON_PATH,
            json={"couponCode": code, "orderAmount": float(order_amount)},
        )
        if not isinstance(data, dict):
            raise RemoteRejected("The store returned no coupon details")
        try:
            discount_type = DiscountType(data.get("discountType", "fixed"))
        except ValueError:
            discount_type = DiscountType.FIXED
        return AppliedCoupon(
            code=data.get("couponCode", code),
            discount_amount=Decimal(str(data.get("discountAmount", 0))),
            discount_type=discount_type,
        )

    # Helper methods for parsing responses

    def _parse_lines(self, data: Any) -> list[CartLine]:
        lines = []
        for item_data in data or []:
            try:
                lines.append(self._parse_line(item_data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse cart line: {e}")
        return lines

    def _parse_line(self, item_data: dict[str, Any]) -> CartLine:
        product = None
        product_data = item_data.get("product")
        if product_data:
            product = Product(
                id=product_data.get("id", item_data.get("productId")),
                product_code=product_data.get("productCode"),
                product_name=product_data.get("productName", ""),
                author=product_data.get("author"),
                price=Decimal(str(product_data.get("price", 0))),
                stock_quantity=product_data.get("stockQuantity"),
                is_active=product_data.get("isActive", True),
            )

        quantity = int(item_data["quantity"])
        unit_price = Decimal(str(item_data.get("unitPrice", 0)))
        total_price = item_data.get("totalPrice")
        return CartLine(
            id=item_data["id"],
            product_id=item_data.get("productId", product.id if product else 0),
            quantity=quantity,
            unit_price=unit_price,
            total_price=Decimal(str(total_price)) if total_price is not None else unit_price * quantity,
            product=product,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
