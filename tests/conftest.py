"""
Test configuration and fixtures for the bookstore cart server
"""

import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from bookstore_server.bookstore_client import RemoteCartService
from bookstore_server.config import reset_settings
from bookstore_server.coordinator import CartCoordinator
from bookstore_server.errors import RemoteRejected
from bookstore_server.models import AppliedCoupon, CartLine, DiscountType, Product


def build_line(
    line_id: int,
    quantity: int = 1,
    unit_price: str = "10",
    stock: Optional[int] = None,
    product_id: Optional[int] = None,
    name: Optional[str] = None,
) -> CartLine:
    product_id = product_id if product_id is not None else 100 + line_id
    price = Decimal(unit_price)
    return CartLine(
        id=line_id,
        product_id=product_id,
        quantity=quantity,
        unit_price=price,
        total_price=price * quantity,
        product=Product(
            id=product_id,
            product_name=name or f"Book {line_id}",
            price=price,
            stock_quantity=stock,
        ),
    )


class FakeCartService(RemoteCartService):
    """
    In-memory store.

    Calls can be held open with ``hold`` and made to fail with ``fail_next``;
    both are bound to a call when it starts, so the order in which calls are
    issued decides which one is held or fails.
    """

    def __init__(self, lines: Optional[list[CartLine]] = None) -> None:
        self.lines = [line.model_copy(deep=True) for line in lines or []]
        self.calls: list[tuple] = []
        self.clamp_to: Optional[int] = None
        self.coupon_discount = Decimal("5")
        self._holds: dict[str, list[asyncio.Event]] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._next_id = 1000

    def hold(self, operation: str) -> asyncio.Event:
        """Keep the next ``operation`` call open until the returned event is set."""
        event = asyncio.Event()
        self._holds.setdefault(operation, []).append(event)
        return event

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures.setdefault(operation, []).append(error)

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def _enter(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        holds = self._holds.get(operation)
        event = holds.pop(0) if holds else None
        failures = self._failures.get(operation)
        error = failures.pop(0) if failures else None
        if event is not None:
            await event.wait()
        else:
            await asyncio.sleep(0)
        if error is not None:
            raise error

    def _find(self, line_id: int) -> CartLine:
        for line in self.lines:
            if line.id == line_id:
                return line
        raise RemoteRejected(f"Cart item {line_id} not found", status_code=404)

    async def fetch_cart(self) -> list[CartLine]:
        await self._enter("fetch_cart")
        return [line.model_copy(deep=True) for line in self.lines]

    async def update_line_quantity(self, line_id: int, quantity: int) -> CartLine:
        await self._enter("update_line_quantity", line_id, quantity)
        line = self._find(line_id)
        if self.clamp_to is not None:
            quantity = min(quantity, self.clamp_to)
        line.quantity = quantity
        line.total_price = line.unit_price * quantity
        return line.model_copy(deep=True)

    async def remove_line(self, line_id: int) -> None:
        await self._enter("remove_line", line_id)
        self.lines.remove(self._find(line_id))

    async def clear_cart(self) -> None:
        await self._enter("clear_cart")
        self.lines = []

    async def add_to_cart(self, product_id: int, quantity: int) -> list[CartLine]:
        await self._enter("add_to_cart", product_id, quantity)
        self._next_id += 1
        self.lines.append(build_line(self._next_id, quantity=quantity, product_id=product_id))
        return [line.model_copy(deep=True) for line in self.lines]

    async def apply_coupon(self, code: str, order_amount: Decimal) -> AppliedCoupon:
        await self._enter("apply_coupon", code, order_amount)
        return AppliedCoupon(code=code.upper(), discount_amount=self.coupon_discount, discount_type=DiscountType.FIXED)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep tests away from the real environment and home directory."""
    for name in ("BOOKSTORE_ACCESS_TOKEN", "BOOKSTORE_EMAIL", "BOOKSTORE_PASSWORD", "BOOKSTORE_API_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BOOKSTORE_SESSION_FILE", str(tmp_path / "session.json"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def make_line():
    """Factory for cart lines"""
    return build_line


@pytest.fixture
def three_lines():
    return [
        build_line(1, quantity=2, unit_price="10", stock=10),
        build_line(2, quantity=1, unit_price="25.50", stock=3),
        build_line(3, quantity=4, unit_price="7", stock=20),
    ]


@pytest.fixture
def service(three_lines):
    return FakeCartService(three_lines)


@pytest.fixture
def notifications():
    """Outcomes reported to the user, in order"""
    return []


@pytest.fixture
async def coordinator(service, notifications):
    """Coordinator loaded with the service's cart"""
    coordinator = CartCoordinator(service, notifier=notifications.append, refresh_after_failures=0)
    outcome = await coordinator.refresh_snapshot()
    assert outcome.success
    service.calls.clear()
    yield coordinator
    await coordinator.wait_idle()


@pytest.fixture
def make_coordinator(notifications):
    """Factory building a loaded coordinator over a fresh fake store"""

    async def factory(lines: list[CartLine], **kwargs) -> tuple[CartCoordinator, FakeCartService]:
        fake = FakeCartService(lines)
        kwargs.setdefault("refresh_after_failures", 0)
        built = CartCoordinator(fake, notifier=notifications.append, **kwargs)
        await built.refresh_snapshot()
        fake.calls.clear()
        return built, fake

    return factory
