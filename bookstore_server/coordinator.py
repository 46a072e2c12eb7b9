"""
Optimistic cart coordinator.

Owns the local copy of the shopper's cart. Quantity changes, removals and
clears are shown immediately and then confirmed with the store; when the
store refuses or cannot be reached, the change is rolled back and the
reason reported.

Every change to a line gets a sequence number. Only the newest change for
a line may touch what is displayed, so a slow response for an older change
can never overwrite a newer one. An older change confirmed after the newest
one failed is shown, since it is what the store now holds.
"""

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from .bookstore_client import RemoteCartService
from .errors import CartServiceError, NetworkFailure
from .models import (
    CartLine,
    CartSnapshot,
    CartTotals,
    MutationKind,
    MutationOutcome,
    OutcomeKind,
    PendingMutation,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[MutationOutcome], None]
Listener = Callable[[CartSnapshot], None]
Confirm = Callable[[str], bool]


def _failure_kind(error: CartServiceError) -> OutcomeKind:
    if isinstance(error, NetworkFailure):
        return OutcomeKind.NETWORK_FAILURE
    return OutcomeKind.REMOTE_REJECTED


class CartCoordinator:
    """Single writer of the local cart snapshot."""

    def __init__(
        self,
        service: RemoteCartService,
        notifier: Optional[Notifier] = None,
        confirm: Optional[Confirm] = None,
        shipping_fee: Decimal = Decimal("35"),
        refresh_after_failures: int = 3,
    ) -> None:
        """
        Args:
            service: Authoritative cart API
            notifier: Called once with every reported outcome (toasts)
            confirm: Asked before removals and clears when the caller
                does not say whether the user confirmed
            shipping_fee: Flat shipping added to non-empty carts
            refresh_after_failures: Consecutive failed changes before the
                cart is re-fetched; 0 disables
        """
        self.service = service
        self.notifier = notifier
        self.confirm = confirm
        self.shipping_fee = Decimal(shipping_fee)
        self.refresh_after_failures = refresh_after_failures

        self._snapshot = CartSnapshot()
        self._pending: dict[int, PendingMutation] = {}
        self._seq = itertools.count(1)
        self._generation = 0
        self._restore_to: Optional[CartSnapshot] = None
        self._confirmed_seq: dict[int, int] = {}
        self._order: dict[int, int] = {}
        self._consecutive_failures = 0
        self._inflight: set[asyncio.Future] = set()
        self._listeners: list[Listener] = []

    # Read access

    def snapshot(self) -> CartSnapshot:
        """Copy of the cart as currently displayed."""
        return self._snapshot.model_copy(deep=True)

    @property
    def lines(self) -> list[CartLine]:
        return [line.model_copy(deep=True) for line in self._snapshot.lines]

    def get_line(self, line_id: int) -> Optional[CartLine]:
        line = self._snapshot.find(line_id)
        return line.model_copy(deep=True) if line is not None else None

    def is_pending(self, line_id: int) -> bool:
        return line_id in self._pending

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a copy of the cart after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def totals(self) -> CartTotals:
        """Totals for the lines selected for checkout."""
        selected = [line for line in self._snapshot.lines if line.id in self._snapshot.selected_ids]
        subtotal = sum((line.total_price for line in selected), Decimal("0"))
        shipping = self.shipping_fee if subtotal > 0 else Decimal("0")
        coupon = self._snapshot.applied_coupon
        discount = coupon.discount_amount if coupon is not None and subtotal > 0 else Decimal("0")
        total = max(subtotal + shipping - discount, Decimal("0"))
        return CartTotals(
            subtotal=subtotal,
            shipping=shipping,
            discount=discount,
            total=total,
            item_count=sum(line.quantity for line in selected),
        )

    # Line mutations

    def set_quantity(self, line_id: int, new_quantity: int) -> "asyncio.Future[MutationOutcome]":
        """
        Show ``new_quantity`` for the line at once and confirm it with the store.

        Returns a future resolving to the outcome once the store answers.
        Rejected requests return an already resolved future and make no
        network call.
        """
        line = self._snapshot.find(line_id)
        if line is None:
            return self._rejected(OutcomeKind.VALIDATION_REJECTED, f"Line {line_id} is not in the cart", line_id)
        if new_quantity < 1:
            return self._rejected(OutcomeKind.VALIDATION_REJECTED, "Quantity must be at least 1", line_id)

        stock = line.stock_ceiling
        if stock is not None and stock <= 0:
            return self._rejected(
                OutcomeKind.OUT_OF_STOCK_CONFIRMATION_REQUIRED,
                f"{line.name} is out of stock. Remove it from the cart?",
                line_id,
                remaining_stock=0,
            )
        if stock is not None and new_quantity > stock:
            return self._rejected(
                OutcomeKind.VALIDATION_REJECTED,
                f"Only {stock} left in stock for {line.name}",
                line_id,
                remaining_stock=stock,
            )

        previous = self._pending.get(line_id)
        if previous is not None:
            logger.info(f"Line {line_id}: superseding change #{previous.seq}")
        prior_quantity, prior_total, prior_seq = self._prior_values(line, previous)

        new_total = line.unit_price * new_quantity
        pending = PendingMutation(
            line_id=line_id,
            seq=next(self._seq),
            generation=self._generation,
            kind=MutationKind.QUANTITY,
            prior_quantity=prior_quantity,
            prior_total_price=prior_total,
            prior_seq=prior_seq,
            new_quantity=new_quantity,
            new_total_price=new_total,
        )
        self._pending[line_id] = pending
        self._put_line(line.model_copy(update={"quantity": new_quantity, "total_price": new_total}))
        logger.info(f"Line {line_id}: showing quantity {new_quantity} (change #{pending.seq})")
        self._changed()
        return self._spawn(self._confirm_quantity(pending))

    async def _confirm_quantity(self, pending: PendingMutation) -> MutationOutcome:
        try:
            confirmed = await self.service.update_line_quantity(pending.line_id, pending.new_quantity)
        except CartServiceError as e:
            if not self._is_current(pending):
                logger.info(f"Line {pending.line_id}: ignoring failure of superseded change #{pending.seq}")
                return self._superseded(pending, success=False, error=e)

            del self._pending[pending.line_id]
            self._confirmed_seq[pending.line_id] = pending.prior_seq
            restored = self._restore_quantity(pending)
            logger.warning(
                f"Line {pending.line_id}: rolled back to quantity {pending.prior_quantity}: {e.message}"
            )
            outcome = self._report(
                MutationOutcome(
                    success=False,
                    kind=_failure_kind(e),
                    message=e.message,
                    line_id=pending.line_id,
                    line=restored,
                )
            )
            await self._after_failure()
            return outcome

        if not self._is_current(pending):
            self._absorb(pending, confirmed)
            logger.info(f"Line {pending.line_id}: change #{pending.seq} confirmed after being superseded")
            return self._superseded(pending, success=True, line=confirmed)

        del self._pending[pending.line_id]
        self._confirmed_seq[pending.line_id] = pending.seq
        self._consecutive_failures = 0
        merged = None
        line = self._working().find(pending.line_id)
        if line is not None:
            if confirmed.quantity != pending.new_quantity:
                logger.info(
                    f"Line {pending.line_id}: store set quantity {confirmed.quantity} "
                    f"instead of {pending.new_quantity}"
                )
            merged = line.model_copy(
                update={
                    "quantity": confirmed.quantity,
                    "unit_price": confirmed.unit_price,
                    "total_price": confirmed.total_price,
                    "product": confirmed.product or line.product,
                }
            )
            self._put_line(merged)
            self._changed()

        return self._report(
            MutationOutcome(
                success=True,
                message="Cart updated successfully",
                line_id=pending.line_id,
                line=merged.model_copy(deep=True) if merged is not None else confirmed,
            )
        )

    def remove_line(self, line_id: int, confirmed: Optional[bool] = None) -> "asyncio.Future[MutationOutcome]":
        """
        Take the line out of the cart at once and confirm it with the store.

        On failure the line goes back to its original place among the lines
        still in the cart.
        """
        index = self._snapshot.index_of(line_id)
        if index < 0:
            return self._rejected(OutcomeKind.VALIDATION_REJECTED, f"Line {line_id} is not in the cart", line_id)

        line = self._snapshot.lines[index]
        if not self._is_confirmed(confirmed, f"Remove {line.name} from the cart?"):
            return self._rejected(OutcomeKind.DECLINED, "Item was not removed", line_id)

        prior_quantity, prior_total, prior_seq = self._prior_values(line, self._pending.get(line_id))
        pending = PendingMutation(
            line_id=line_id,
            seq=next(self._seq),
            generation=self._generation,
            kind=MutationKind.REMOVE,
            prior_quantity=prior_quantity,
            prior_total_price=prior_total,
            prior_seq=prior_seq,
            removed_line=line.model_copy(
                update={"quantity": prior_quantity, "total_price": prior_total}, deep=True
            ),
            index=index,
            was_selected=line_id in self._snapshot.selected_ids,
        )
        self._pending[line_id] = pending
        del self._snapshot.lines[index]
        self._snapshot.selected_ids.discard(line_id)
        logger.info(f"Line {line_id}: removed from position {index} (change #{pending.seq})")
        self._changed()
        return self._spawn(self._confirm_removal(pending))

    async def _confirm_removal(self, pending: PendingMutation) -> MutationOutcome:
        try:
            await self.service.remove_line(pending.line_id)
        except CartServiceError as e:
            if not self._is_current(pending):
                return self._superseded(pending, success=False, error=e)

            del self._pending[pending.line_id]
            self._confirmed_seq[pending.line_id] = pending.prior_seq
            restored = pending.removed_line.model_copy(deep=True)
            target = self._working()
            index = self._insert_ordered(target, restored, fallback=pending.index)
            if pending.was_selected:
                target.selected_ids.add(pending.line_id)
            logger.warning(f"Line {pending.line_id}: removal failed, restored at position {index}: {e.message}")
            self._changed()
            outcome = self._report(
                MutationOutcome(
                    success=False,
                    kind=_failure_kind(e),
                    message=e.message,
                    line_id=pending.line_id,
                    line=restored.model_copy(deep=True),
                )
            )
            await self._after_failure()
            return outcome

        if not self._is_current(pending):
            return self._superseded(pending, success=True)

        del self._pending[pending.line_id]
        self._confirmed_seq[pending.line_id] = pending.seq
        self._consecutive_failures = 0
        return self._report(
            MutationOutcome(success=True, message="Item removed from cart", line_id=pending.line_id)
        )

    def clear_all(self, confirmed: Optional[bool] = None) -> "asyncio.Future[MutationOutcome]":
        """
        Empty the cart at once and confirm it with the store.

        On failure the cart, its selection and its coupon come back as they
        were. Changes to individual lines stay in flight while the clear is
        pending; whatever they settle to is part of the cart a failed clear
        brings back.
        """
        if self._restore_to is not None:
            return self._rejected(OutcomeKind.VALIDATION_REJECTED, "The cart is already being cleared")
        if not self._is_confirmed(confirmed, "Remove every item from the cart?"):
            return self._rejected(OutcomeKind.DECLINED, "Cart was not cleared")

        generation = self._generation
        self._restore_to = self._snapshot
        self._snapshot = CartSnapshot()
        logger.info(f"Clearing cart ({len(self._restore_to.lines)} lines shown)")
        self._changed()
        return self._spawn(self._confirm_clear(generation))

    async def _confirm_clear(self, generation: int) -> MutationOutcome:
        try:
            await self.service.clear_cart()
        except CartServiceError as e:
            if generation != self._generation:
                logger.info("Ignoring failure of superseded clear")
                return MutationOutcome(
                    success=False, kind=_failure_kind(e), message=e.message, superseded=True
                )

            self._snapshot = self._restore_to
            self._restore_to = None
            logger.warning(f"Clear failed, restored {len(self._snapshot.lines)} lines: {e.message}")
            self._changed()
            outcome = self._report(MutationOutcome(success=False, kind=_failure_kind(e), message=e.message))
            await self._after_failure()
            return outcome

        if generation != self._generation:
            return MutationOutcome(success=True, message="Cart cleared", superseded=True)

        self._restore_to = None
        self._start_generation()
        self._consecutive_failures = 0
        return self._report(MutationOutcome(success=True, message="Cart cleared successfully"))

    # Whole-cart operations

    async def refresh_snapshot(self) -> MutationOutcome:
        """Replace the local cart with the store's copy."""
        try:
            lines = await self.service.fetch_cart()
        except CartServiceError as e:
            logger.error(f"Failed to fetch cart: {e.message}")
            return self._report(MutationOutcome(success=False, kind=_failure_kind(e), message=e.message))

        self._install(lines)
        logger.info(f"Cart refreshed: {len(lines)} lines")
        return MutationOutcome(success=True, message="Cart refreshed")

    async def add_item(self, product_id: int, quantity: int = 1) -> MutationOutcome:
        """Add a product; the cart is replaced by the one the store returns."""
        if quantity < 1:
            return self._report(
                MutationOutcome(
                    success=False, kind=OutcomeKind.VALIDATION_REJECTED, message="Quantity must be at least 1"
                )
            )
        try:
            lines = await self.service.add_to_cart(product_id, quantity)
        except CartServiceError as e:
            return self._report(MutationOutcome(success=False, kind=_failure_kind(e), message=e.message))

        self._install(lines)
        added = next((line for line in lines if line.product_id == product_id), None)
        return self._report(
            MutationOutcome(
                success=True,
                message="Added to cart",
                line_id=added.id if added is not None else None,
                line=added,
            )
        )

    def toggle_selection(self, line_id: int, selected: bool) -> MutationOutcome:
        """Include or exclude a line from checkout totals."""
        if self._snapshot.find(line_id) is None:
            return self._report(
                MutationOutcome(
                    success=False,
                    kind=OutcomeKind.VALIDATION_REJECTED,
                    message=f"Line {line_id} is not in the cart",
                    line_id=line_id,
                )
            )
        if selected:
            self._snapshot.selected_ids.add(line_id)
        else:
            self._snapshot.selected_ids.discard(line_id)
        self._changed()
        return MutationOutcome(success=True, line_id=line_id)

    def select_all(self, selected: bool = True) -> MutationOutcome:
        if selected:
            self._snapshot.selected_ids = {line.id for line in self._snapshot.lines}
        else:
            self._snapshot.selected_ids = set()
        self._changed()
        return MutationOutcome(success=True)

    async def apply_coupon(self, code: str) -> MutationOutcome:
        """Ask the store to validate a coupon for the selected subtotal."""
        code = code.strip()
        if not code:
            return self._report(
                MutationOutcome(
                    success=False, kind=OutcomeKind.VALIDATION_REJECTED, message="Please enter a coupon code"
                )
            )
        subtotal = self.totals().subtotal
        if subtotal <= 0:
            return self._report(
                MutationOutcome(success=False, kind=OutcomeKind.VALIDATION_REJECTED, message="Your cart is empty")
            )

        generation = self._generation
        try:
            coupon = await self.service.apply_coupon(code, subtotal)
        except CartServiceError as e:
            return self._report(MutationOutcome(success=False, kind=_failure_kind(e), message=e.message))

        if generation != self._generation or self._restore_to is not None:
            logger.info(f"Dropping coupon {coupon.code}: the cart was replaced while it was checked")
            return MutationOutcome(
                success=False,
                kind=OutcomeKind.REMOTE_REJECTED,
                message="Your cart changed while the coupon was checked. Please apply it again.",
                superseded=True,
            )

        self._snapshot.applied_coupon = coupon
        self._changed()
        return self._report(MutationOutcome(success=True, message=f'Coupon "{coupon.code}" applied successfully!'))

    def remove_coupon(self) -> MutationOutcome:
        self._snapshot.applied_coupon = None
        self._changed()
        return self._report(MutationOutcome(success=True, message="Coupon removed"))

    async def wait_idle(self) -> None:
        """Wait until every remote call started by this coordinator has settled."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    # Internals

    def _is_current(self, pending: PendingMutation) -> bool:
        return self._pending.get(pending.line_id) is pending

    def _prior_values(self, line: CartLine, previous: Optional[PendingMutation]) -> tuple[int, Decimal, int]:
        """Values a new change to ``line`` rolls back to, and the change that confirmed them."""
        if previous is not None:
            return previous.prior_quantity, previous.prior_total_price, previous.prior_seq
        return line.quantity, line.total_price, self._confirmed_seq.get(line.id, 0)

    def _working(self) -> CartSnapshot:
        """Cart that line confirmations write into: the one a failed clear restores while a clear is pending."""
        return self._restore_to if self._restore_to is not None else self._snapshot

    def _absorb(self, stale: PendingMutation, confirmed: CartLine) -> None:
        """A superseded change went through; it is authoritative unless a newer one already was."""
        if stale.generation != self._generation:
            return

        current = self._pending.get(stale.line_id)
        if current is not None:
            if stale.seq <= current.prior_seq:
                return
            current.prior_quantity = confirmed.quantity
            current.prior_total_price = confirmed.total_price
            current.prior_seq = stale.seq
            if current.removed_line is not None:
                current.removed_line = current.removed_line.model_copy(
                    update={
                        "quantity": confirmed.quantity,
                        "unit_price": confirmed.unit_price,
                        "total_price": confirmed.total_price,
                    }
                )
            return

        # Newest change already settled; show this one if it is newer than what is shown
        if stale.seq <= self._confirmed_seq.get(stale.line_id, 0):
            return
        line = self._working().find(stale.line_id)
        if line is None:
            return
        self._confirmed_seq[stale.line_id] = stale.seq
        self._put_line(
            line.model_copy(
                update={
                    "quantity": confirmed.quantity,
                    "unit_price": confirmed.unit_price,
                    "total_price": confirmed.total_price,
                }
            )
        )
        logger.info(f"Line {stale.line_id}: showing quantity {confirmed.quantity} confirmed by change #{stale.seq}")
        self._changed()

    def _restore_quantity(self, pending: PendingMutation) -> Optional[CartLine]:
        line = self._working().find(pending.line_id)
        if line is None:
            return None
        restored = line.model_copy(
            update={"quantity": pending.prior_quantity, "total_price": pending.prior_total_price}
        )
        self._put_line(restored)
        self._changed()
        return restored.model_copy(deep=True)

    def _install(self, lines: list[CartLine]) -> None:
        """Replace the snapshot wholesale, keeping deselected lines deselected."""
        known = {line.id for line in self._working().lines}
        deselected = known - self._working().selected_ids
        coupon = self._working().applied_coupon if lines else None

        self._start_generation()
        self._restore_to = None
        self._consecutive_failures = 0
        self._order = {line.id: rank for rank, line in enumerate(lines)}
        self._snapshot = CartSnapshot(
            lines=list(lines),
            selected_ids={line.id for line in lines if line.id not in deselected},
            applied_coupon=coupon,
        )
        self._changed()

    def _start_generation(self) -> int:
        """Supersede every change in flight."""
        self._generation += 1
        self._pending.clear()
        self._confirmed_seq.clear()
        return self._generation

    def _put_line(self, line: CartLine) -> None:
        target = self._working()
        index = target.index_of(line.id)
        if index >= 0:
            target.lines[index] = line

    def _insert_ordered(self, target: CartSnapshot, line: CartLine, fallback: Optional[int] = None) -> int:
        """Put ``line`` back before the first line that came after it when the cart was loaded."""
        rank = self._order.get(line.id)
        if rank is None:
            index = min(fallback if fallback is not None else len(target.lines), len(target.lines))
        else:
            index = next(
                (
                    position
                    for position, other in enumerate(target.lines)
                    if self._order.get(other.id, rank + 1) > rank
                ),
                len(target.lines),
            )
        target.lines.insert(index, line)
        return index

    def _is_confirmed(self, confirmed: Optional[bool], question: str) -> bool:
        if confirmed is not None:
            return confirmed
        if self.confirm is not None:
            return bool(self.confirm(question))
        return True

    async def _after_failure(self) -> None:
        self._consecutive_failures += 1
        if not self.refresh_after_failures or self._consecutive_failures < self.refresh_after_failures:
            return
        if self._pending or self._restore_to is not None:
            return
        logger.warning(f"{self._consecutive_failures} cart changes failed in a row, re-fetching cart")
        await self.refresh_snapshot()

    def _superseded(
        self,
        pending: PendingMutation,
        success: bool,
        error: Optional[CartServiceError] = None,
        line: Optional[CartLine] = None,
    ) -> MutationOutcome:
        return MutationOutcome(
            success=success,
            kind=_failure_kind(error) if error is not None else None,
            message=error.message if error is not None else "Replaced by a newer change",
            line_id=pending.line_id,
            line=line,
            superseded=True,
        )

    def _rejected(
        self,
        kind: OutcomeKind,
        message: str,
        line_id: Optional[int] = None,
        remaining_stock: Optional[int] = None,
    ) -> "asyncio.Future[MutationOutcome]":
        logger.info(f"Rejected without calling the store: {message}")
        outcome = MutationOutcome(
            success=False,
            kind=kind,
            message=message,
            line_id=line_id,
            remaining_stock=remaining_stock,
        )
        return self._resolved(self._report(outcome))

    def _resolved(self, outcome: MutationOutcome) -> "asyncio.Future[MutationOutcome]":
        future = asyncio.get_running_loop().create_future()
        future.set_result(outcome)
        return future

    def _spawn(self, coro: Awaitable[MutationOutcome]) -> "asyncio.Future[MutationOutcome]":
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _report(self, outcome: MutationOutcome) -> MutationOutcome:
        if self.notifier is not None:
            try:
                self.notifier(outcome)
            except Exception as e:
                logger.error(f"Notifier failed for outcome {outcome.kind}: {e}", exc_info=True)
        return outcome

    def _changed(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Cart listener {listener!r} failed: {e}", exc_info=True)
