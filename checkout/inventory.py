"""Stock ledger: the only code path that mutates product stock.

Every decrement is a single conditional ``UPDATE ... WHERE stock >= :q``
(compare-and-swap in one round trip), so two concurrent buyers of the same
stock cell can never both succeed beyond the available quantity. A stock
cell is either the product's flat ``stock`` or the ``stock`` of the option
selected for the product's first variant dimension.

All operations accept an optional ``session`` so they can join a caller's
transaction (order creation, cancellation); without one they open and
commit their own.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .db import transaction
from .domain import (
    NO_VARIANTS,
    Availability,
    NoVariants,
    Selection,
    StockDraw,
    StockFailure,
    StockRequest,
    VariantSelection,
)
from .errors import InsufficientStock, NotFound
from .models import ProductModel, VariantOptionModel

logger = logging.getLogger(__name__)

ACTIVE = "active"


@dataclass(frozen=True)
class ResolvedSelection:
    """A selection matched against a product's variant options.

    Attributes:
        option: The option row holding the stock cell, or None for the
            product's flat stock.
        unit_price_cents: Base price plus the modifiers of every selected
            option.
    """

    option: Optional[VariantOptionModel]
    unit_price_cents: int
    sku: Optional[str]
    image_url: Optional[str]

    def on_hand(self, product: ProductModel) -> int:
        return self.option.stock if self.option is not None else product.stock


def variant_dimensions(product: ProductModel) -> List[str]:
    """Variant names of ``product`` ordered by dimension position."""
    names: List[str] = []
    for opt in sorted(product.options, key=lambda o: (o.variant_position, o.id or 0)):
        if opt.variant_name not in names:
            names.append(opt.variant_name)
    return names


def resolve_selection(product: ProductModel, selection: Selection) -> ResolvedSelection:
    """Match ``selection`` against ``product``'s variants.

    Raises:
        NotFound: When the product has variants and a dimension is missing
            or an option does not exist, or when a selection is given for a
            product without variants.
    """
    dims = variant_dimensions(product)
    if not dims:
        if not isinstance(selection, NoVariants):
            raise NotFound(f"product {product.id} has no variants")
        return ResolvedSelection(None, product.price_cents, product.sku, product.image_url)

    if not isinstance(selection, VariantSelection):
        raise NotFound(f"product {product.id} requires a variant selection")
    chosen = selection.as_dict()
    if set(chosen) != set(dims):
        raise NotFound(f"variant selection for product {product.id} must cover {', '.join(dims)}")

    by_key = {(o.variant_name, o.value): o for o in product.options}
    picked = []
    for name in dims:
        opt = by_key.get((name, chosen[name]))
        if opt is None:
            raise NotFound(f"variant option {name}={chosen[name]} not found")
        picked.append(opt)

    primary = picked[0]
    price = product.price_cents + sum(o.price_cents or 0 for o in picked)
    return ResolvedSelection(
        option=primary,
        unit_price_cents=price,
        sku=primary.sku or product.sku,
        image_url=primary.image_url or product.image_url,
    )


def cell_key(product: ProductModel, resolved: ResolvedSelection) -> tuple:
    """Identity of the stock cell a resolved selection draws from."""
    if resolved.option is None:
        return ("product", product.id)
    return ("option", resolved.option.id)


def evaluate(product: ProductModel, on_hand: int, quantity: int) -> Availability:
    """Apply the backorder policy to an observed stock value.

    Untracked products are always available. Otherwise a line is available
    when stock covers it, and backorderable when it does not but the product
    allows backorders.
    """
    if not product.track_inventory:
        return Availability(available=True, available_stock=on_hand, can_backorder=False)
    available = on_hand >= quantity
    return Availability(
        available=available,
        available_stock=on_hand,
        can_backorder=(not available) and bool(product.allow_backorder),
    )


class StockLedger:
    """Atomic check/decrement/restore primitives over stock cells.

    Args:
        sessions: Session factory bound to the primary store.
        cas_attempts: Bound on the compare-and-swap loop used to draw the
            on-hand units of a backorderable cell under contention.
    """

    def __init__(self, sessions: sessionmaker, cas_attempts: int = 5):
        self.sessions = sessions
        self.cas_attempts = cas_attempts

    # ---- reads ----
    def load_product(self, s: Session, product_id: str, require_active: bool = True) -> ProductModel:
        stmt = (
            select(ProductModel)
            .where(ProductModel.id == product_id)
            .options(selectinload(ProductModel.options))
            .execution_options(populate_existing=True)
        )
        product = s.execute(stmt).scalar_one_or_none()
        if product is None or (require_active and product.status != ACTIVE):
            raise NotFound(f"product {product_id} not found")
        return product

    def check_availability(
        self,
        product_id: str,
        quantity: int,
        selection: Selection = NO_VARIANTS,
        session: Optional[Session] = None,
    ) -> Availability:
        """Read-only availability of ``quantity`` units.

        Args:
            product_id: Product to check.
            quantity: Units wanted.
            selection: Variant selection for variant products.
            session: Optional session of an enclosing transaction.

        Returns:
            Availability: available/available_stock/can_backorder.

        Raises:
            NotFound: Missing or inactive product, or invalid selection.
        """
        with transaction(self.sessions, session) as s:
            product = self.load_product(s, product_id)
            resolved = resolve_selection(product, selection)
            return evaluate(product, resolved.on_hand(product), quantity)

    def check_demand(self, items: Iterable[StockRequest], session: Optional[Session] = None) -> List[Optional[Availability]]:
        """Read-only availability of several lines, summing demand per stock cell.

        Lines drawing from the same cell (selections sharing the first
        variant dimension) are judged against their combined quantity, so
        every one of them is unavailable when the cell cannot cover them all.

        Returns:
            One ``Availability`` per item in input order, or None for an item
            whose product or selection no longer resolves.
        """
        with transaction(self.sessions, session) as s:
            resolved = []
            demand: dict = {}
            for req in items:
                try:
                    product = self.load_product(s, req.product_id)
                    cell = resolve_selection(product, req.selection)
                except NotFound:
                    resolved.append(None)
                    continue
                key = cell_key(product, cell)
                demand[key] = demand.get(key, 0) + req.quantity
                resolved.append((product, cell, key))
            return [
                None if entry is None else evaluate(entry[0], entry[1].on_hand(entry[0]), demand[entry[2]])
                for entry in resolved
            ]

    # ---- writes ----
    def decrement(
        self,
        product_id: str,
        quantity: int,
        selection: Selection = NO_VARIANTS,
        session: Optional[Session] = None,
    ) -> StockDraw:
        """Conditionally take ``quantity`` units from the resolved stock cell.

        Raises:
            InsufficientStock: When the conditional write matched no row and
                the product does not allow backorders.
            NotFound: Missing or inactive product, or invalid selection.
        """
        with transaction(self.sessions, session) as s:
            return self._draw(s, StockRequest(product_id, quantity, selection))

    def batch_decrement(self, items: Iterable[StockRequest], session: Optional[Session] = None) -> List[StockDraw]:
        """Decrement every item in one all-or-nothing transaction.

        Every item is attempted so the error lists the complete set of
        failures; if any failed, the exception propagates and the enclosing
        transaction is rolled back, undoing the successful decrements too.

        Returns:
            List[StockDraw]: One draw per item, in input order.

        Raises:
            InsufficientStock: With ``failures`` holding every failed item.
        """
        with transaction(self.sessions, session) as s:
            draws: List[StockDraw] = []
            failures: List[StockFailure] = []
            for req in items:
                try:
                    draws.append(self._draw(s, req))
                except InsufficientStock as e:
                    failures.append(StockFailure(req.product_id, req.quantity, e.available_stock, req.selection))
            if failures:
                first = failures[0]
                logger.warning(
                    "batch decrement failed",
                    extra={"failed_items": len(failures), "product_id": first.product_id},
                )
                raise InsufficientStock(first.product_id, first.available_stock, first.requested, failures=failures)
            return draws

    def restore(
        self,
        product_id: str,
        quantity: int,
        selection: Selection = NO_VARIANTS,
        session: Optional[Session] = None,
    ) -> bool:
        """Unconditionally give ``quantity`` units back to the stock cell.

        Whether a restoration already happened is tracked by the caller.
        A product or option that no longer exists is logged and skipped so
        that the owning order can still be cancelled.

        Returns:
            bool: True when a stock cell was incremented.
        """
        if quantity <= 0:
            return False
        with transaction(self.sessions, session) as s:
            try:
                product = self.load_product(s, product_id, require_active=False)
                resolved = resolve_selection(product, selection)
            except NotFound:
                logger.warning("restore skipped: stock cell not found", extra={"product_id": product_id})
                return False
            if not product.track_inventory:
                return False
            model, key = self._cell(product, resolved)
            s.execute(
                update(model)
                .where(key)
                .values(stock=model.stock + quantity)
                .execution_options(synchronize_session=False)
            )
            logger.info("stock restored", extra={"product_id": product_id, "quantity": quantity})
            return True

    # ---- internals ----
    @staticmethod
    def _cell(product: ProductModel, resolved: ResolvedSelection):
        if resolved.option is None:
            return ProductModel, ProductModel.id == product.id
        return VariantOptionModel, VariantOptionModel.id == resolved.option.id

    def _draw(self, s: Session, req: StockRequest) -> StockDraw:
        product = self.load_product(s, req.product_id)
        resolved = resolve_selection(product, req.selection)
        if not product.track_inventory:
            return StockDraw(req.product_id, resolved.on_hand(product), reserved=0)

        model, key = self._cell(product, resolved)
        q = req.quantity
        new_stock = s.execute(
            update(model)
            .where(key, model.stock >= q)
            .values(stock=model.stock - q)
            .returning(model.stock)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if new_stock is not None:
            return StockDraw(req.product_id, new_stock, reserved=q)

        if not product.allow_backorder:
            current = s.execute(select(model.stock).where(key)).scalar_one()
            raise InsufficientStock(req.product_id, current, q)

        # Backorder: take whatever is on hand, swapping on the exact value seen.
        for _ in range(self.cas_attempts):
            seen = s.execute(select(model.stock).where(key)).scalar_one()
            take = min(seen, q)
            if take == 0:
                return StockDraw(req.product_id, 0, reserved=0, backordered=q)
            new_stock = s.execute(
                update(model)
                .where(key, model.stock == seen)
                .values(stock=seen - take)
                .returning(model.stock)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if new_stock is not None:
                return StockDraw(req.product_id, new_stock, reserved=take, backordered=q - take)

        current = s.execute(select(model.stock).where(key)).scalar_one()
        logger.warning("backorder draw contended", extra={"product_id": req.product_id})
        raise InsufficientStock(req.product_id, current, q)
