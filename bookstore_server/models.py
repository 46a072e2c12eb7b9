"""Data models for the bookstore cart."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Product(BaseModel):
    """Catalog product as embedded in a cart line."""

    id: int = Field(description="Product ID")
    product_code: Optional[str] = Field(None, description="Catalog product code")
    product_name: str = Field(default="", description="Product name")
    author: Optional[str] = Field(None, description="Book author")
    price: Decimal = Field(default=Decimal("0"), description="Catalog price")
    stock_quantity: Optional[int] = Field(None, description="Units in stock, if known")
    is_active: bool = Field(default=True, description="Product availability")


class CartLine(BaseModel):
    """One product line in the shopping cart."""

    id: int = Field(description="Cart line ID assigned by the store")
    product_id: int = Field(description="Catalog product ID")
    quantity: int = Field(ge=1, description="Quantity of the product")
    unit_price: Decimal = Field(description="Unit price at last sync")
    total_price: Decimal = Field(description="quantity * unit_price")
    product: Optional[Product] = Field(None, description="Embedded catalog product")

    @property
    def stock_ceiling(self) -> Optional[int]:
        """Cached stock for this line's product, None when unknown."""
        if self.product is None:
            return None
        return self.product.stock_quantity

    @property
    def name(self) -> str:
        if self.product is not None and self.product.product_name:
            return self.product.product_name
        return f"Product {self.product_id}"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class AppliedCoupon(BaseModel):
    """Coupon accepted by the store for the current cart."""

    code: str
    discount_amount: Decimal
    discount_type: DiscountType = DiscountType.FIXED


class CartSnapshot(BaseModel):
    """Last known state of the cart, in display order."""

    lines: list[CartLine] = Field(default_factory=list, description="Cart lines")
    selected_ids: set[int] = Field(default_factory=set, description="Lines selected for checkout")
    applied_coupon: Optional[AppliedCoupon] = Field(None, description="Coupon applied to the cart")

    def find(self, line_id: int) -> Optional[CartLine]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def index_of(self, line_id: int) -> int:
        for index, line in enumerate(self.lines):
            if line.id == line_id:
                return index
        return -1


class MutationKind(str, Enum):
    QUANTITY = "quantity"
    REMOVE = "remove"


class PendingMutation(BaseModel):
    """
    In-flight change to one cart line.

    Holds the values to roll back to if the store rejects the change, and
    the sequence number of the change that last confirmed them. Lives
    only until the remote call for the newest intent on the line settles.
    """

    line_id: int
    seq: int
    generation: int = 0
    kind: MutationKind
    prior_quantity: int
    prior_total_price: Decimal
    prior_seq: int = 0
    new_quantity: Optional[int] = None
    new_total_price: Optional[Decimal] = None
    removed_line: Optional[CartLine] = None
    index: Optional[int] = None
    was_selected: bool = False


class OutcomeKind(str, Enum):
    """Why a cart operation did not go through."""

    VALIDATION_REJECTED = "validation_rejected"
    OUT_OF_STOCK_CONFIRMATION_REQUIRED = "out_of_stock_confirmation_required"
    REMOTE_REJECTED = "remote_rejected"
    NETWORK_FAILURE = "network_failure"
    DECLINED = "declined"


class MutationOutcome(BaseModel):
    """Result of a cart operation, suitable for showing to the user."""

    success: bool
    kind: Optional[OutcomeKind] = None
    message: str = ""
    line_id: Optional[int] = None
    remaining_stock: Optional[int] = None
    line: Optional[CartLine] = None
    superseded: bool = Field(
        default=False, description="A newer intent for the same line replaced this one"
    )


class CartTotals(BaseModel):
    """Totals for the selected cart lines."""

    subtotal: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    item_count: int = 0


class AuthCredentials(BaseModel):
    """Authentication credentials."""

    email: str
    password: str


class SessionData(BaseModel):
    """Session data for authenticated user."""

    access_token: Optional[str] = Field(None, description="Bearer token")
    refresh_token: Optional[str] = Field(None, description="Refresh token")
    user_email: Optional[str] = Field(None, description="User email")
    is_authenticated: bool = Field(default=False, description="Authentication status")
