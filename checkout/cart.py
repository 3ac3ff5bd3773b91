"""Cart validation and cart mutation.

``CartValidator`` reconciles stored cart lines with the current catalog in
one batched query and never touches stock. ``CartService`` owns the per-user
cart rows: adding, updating and removing lines, a sliding expiration that is
refreshed on every mutation, and purging expired carts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .db import transaction
from .domain import (
    NO_VARIANTS,
    CartLine,
    CartValidation,
    CartWarning,
    PricedLine,
    Selection,
    WarningCode,
    parse_selection,
    utcnow,
)
from .errors import InsufficientStock, NotFound
from .inventory import ACTIVE, StockLedger, cell_key, evaluate, resolve_selection
from .models import CartItemModel, CartModel, ProductModel

logger = logging.getLogger(__name__)


class CartValidator:
    """Advisory reconciliation of a cart against live product state."""

    def __init__(self, sessions: sessionmaker):
        self.sessions = sessions

    def validate(self, items: Sequence[CartLine], session: Optional[Session] = None) -> CartValidation:
        """Validate ``items`` against the catalog.

        Lines whose product is gone, inactive or whose selection no longer
        resolves are dropped ("no longer available"). Lines above the
        sellable quantity are clamped to the on-hand stock ("quantity
        adjusted") or dropped when nothing is on hand ("out of stock").
        Prices are refreshed to the current catalog price.

        Args:
            items: Stored cart lines.
            session: Optional session of an enclosing transaction.

        Returns:
            CartValidation: Valid priced lines, warnings and the subtotal.
        """
        result = CartValidation()
        if not items:
            return result

        with transaction(self.sessions, session) as s:
            ids = sorted({it.product_id for it in items})
            rows = s.execute(
                select(ProductModel)
                .where(ProductModel.id.in_(ids))
                .options(selectinload(ProductModel.options))
                .execution_options(populate_existing=True)
            ).scalars().all()
            products = {p.id: p for p in rows}

            for it in items:
                product = products.get(it.product_id)
                if product is None or product.status != ACTIVE:
                    result.warnings.append(_warning(it, WarningCode.UNAVAILABLE, "no longer available"))
                    continue
                try:
                    resolved = resolve_selection(product, it.selection)
                except NotFound:
                    result.warnings.append(_warning(it, WarningCode.UNAVAILABLE, "selected option no longer available"))
                    continue

                on_hand = resolved.on_hand(product)
                quantity = it.quantity
                if not evaluate(product, on_hand, quantity).sellable:
                    if on_hand <= 0:
                        result.warnings.append(_warning(it, WarningCode.OUT_OF_STOCK, "out of stock", on_hand))
                        continue
                    result.warnings.append(
                        _warning(it, WarningCode.QUANTITY_ADJUSTED, f"quantity adjusted to {on_hand}", on_hand)
                    )
                    quantity = on_hand

                if it.unit_price_cents and it.unit_price_cents != resolved.unit_price_cents:
                    result.warnings.append(_warning(it, WarningCode.PRICE_CHANGED, "price updated", on_hand))

                result.valid_items.append(
                    PricedLine(
                        item_id=it.id,
                        product_id=it.product_id,
                        selection=it.selection,
                        quantity=quantity,
                        unit_price_cents=resolved.unit_price_cents,
                        name=product.name,
                        sku=resolved.sku,
                        image_url=resolved.image_url,
                    )
                )
        return result


def _warning(line: CartLine, code: WarningCode, message: str, available: int = 0) -> CartWarning:
    return CartWarning(
        item_id=line.id,
        product_id=line.product_id,
        code=code,
        message=message,
        requested=line.quantity,
        available_stock=available,
        selection=line.selection,
    )


@dataclass
class CartView:
    """A validated cart as returned to clients."""

    user_id: str
    items: List[PricedLine] = field(default_factory=list)
    warnings: List[CartWarning] = field(default_factory=list)
    expires_at: Optional[datetime] = None

    @property
    def subtotal_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.items)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)


def to_cart_line(row: CartItemModel) -> CartLine:
    return CartLine(
        id=row.id,
        product_id=row.product_id,
        quantity=row.quantity,
        selection=parse_selection(row.selected_variants),
        unit_price_cents=row.unit_price_cents,
        added_at=row.added_at,
    )


class CartService:
    """Per-user cart persistence with a sliding expiration.

    Args:
        sessions: Session factory bound to the primary store.
        validator: Validator used when reading the cart.
        ledger: Stock ledger used to check that added quantities are sellable.
        ttl_days: Days a cart survives without being touched.
    """

    def __init__(self, sessions: sessionmaker, validator: CartValidator, ledger: StockLedger, ttl_days: int = 30):
        self.sessions = sessions
        self.validator = validator
        self.ledger = ledger
        self.ttl = timedelta(days=ttl_days)

    # ---- reads ----
    def load_lines(self, user_id: str, session: Optional[Session] = None) -> List[CartLine]:
        """Stored lines of the user's live cart (empty when none or expired)."""
        with transaction(self.sessions, session) as s:
            cart = self._find(s, user_id)
            if cart is None or cart.expires_at <= utcnow():
                return []
            return [to_cart_line(row) for row in cart.items]

    def get_cart(self, user_id: str) -> CartView:
        """Validate the cart and persist the cleaned result.

        Dropped lines are deleted, clamped quantities and refreshed prices
        are written back, so the stored cart matches what the user sees.
        """
        with self.sessions.begin() as s:
            cart = self._find(s, user_id)
            if cart is None or cart.expires_at <= utcnow():
                return CartView(user_id=user_id)
            lines = [to_cart_line(row) for row in cart.items]
            validation = self.validator.validate(lines, session=s)

            kept = {line.item_id: line for line in validation.valid_items}
            for row in list(cart.items):
                line = kept.get(row.id)
                if line is None:
                    cart.items.remove(row)
                    continue
                row.quantity = line.quantity
                row.unit_price_cents = line.unit_price_cents
            return CartView(
                user_id=user_id,
                items=validation.valid_items,
                warnings=validation.warnings,
                expires_at=cart.expires_at,
            )

    # ---- mutations ----
    def add_item(self, user_id: str, product_id: str, quantity: int, selection: Selection = NO_VARIANTS) -> CartView:
        """Add ``quantity`` units, merging with a line of the same product and selection.

        Raises:
            NotFound: Missing or inactive product, or invalid selection.
            InsufficientStock: When the merged quantity is not sellable.
        """
        with self.sessions.begin() as s:
            cart = self._get_or_create(s, user_id)
            existing = next(
                (
                    row
                    for row in cart.items
                    if row.product_id == product_id and parse_selection(row.selected_variants) == selection
                ),
                None,
            )
            wanted = quantity + (existing.quantity if existing is not None else 0)
            product = self.ledger.load_product(s, product_id)
            resolved = resolve_selection(product, selection)
            self._check_cell(cart, product, resolved, wanted, skip=existing)

            if existing is not None:
                existing.quantity = wanted
                existing.unit_price_cents = resolved.unit_price_cents
            else:
                cart.items.append(
                    CartItemModel(
                        product_id=product_id,
                        quantity=wanted,
                        selected_variants=selection.to_list(),
                        unit_price_cents=resolved.unit_price_cents,
                        added_at=utcnow(),
                    )
                )
            self._touch(cart)
        return self.get_cart(user_id)

    def update_item(self, user_id: str, item_id: str, quantity: int) -> CartView:
        """Set a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            return self.remove_item(user_id, item_id)
        with self.sessions.begin() as s:
            cart, row = self._line(s, user_id, item_id)
            product = self.ledger.load_product(s, row.product_id)
            resolved = resolve_selection(product, parse_selection(row.selected_variants))
            self._check_cell(cart, product, resolved, quantity, skip=row)
            row.quantity = quantity
            row.unit_price_cents = resolved.unit_price_cents
            self._touch(cart)
        return self.get_cart(user_id)

    def remove_item(self, user_id: str, item_id: str) -> CartView:
        with self.sessions.begin() as s:
            cart, row = self._line(s, user_id, item_id)
            cart.items.remove(row)
            self._touch(cart)
        return self.get_cart(user_id)

    def clear(self, user_id: str, session: Optional[Session] = None) -> None:
        """Remove every line from the user's cart (no-op without a cart)."""
        with transaction(self.sessions, session) as s:
            cart = self._find(s, user_id)
            if cart is None:
                return
            s.execute(delete(CartItemModel).where(CartItemModel.cart_id == cart.id))
            s.expire(cart, ["items"])
            self._touch(cart)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete carts whose expiration has passed.

        Returns:
            int: Number of carts deleted.
        """
        now = now or utcnow()
        with self.sessions.begin() as s:
            ids = s.execute(select(CartModel.id).where(CartModel.expires_at <= now)).scalars().all()
            if not ids:
                return 0
            s.execute(delete(CartItemModel).where(CartItemModel.cart_id.in_(ids)))
            s.execute(delete(CartModel).where(CartModel.id.in_(ids)))
        logger.info("expired carts purged", extra={"count": len(ids)})
        return len(ids)

    # ---- internals ----
    @staticmethod
    def _check_cell(cart: CartModel, product: ProductModel, resolved, quantity: int, skip=None) -> None:
        """Raise unless the stock cell covers ``quantity`` plus the other lines drawing from it."""
        key = cell_key(product, resolved)
        others = 0
        for row in cart.items:
            if row is skip or row.product_id != product.id:
                continue
            try:
                sibling = resolve_selection(product, parse_selection(row.selected_variants))
            except NotFound:
                continue
            if cell_key(product, sibling) == key:
                others += row.quantity
        availability = evaluate(product, resolved.on_hand(product), quantity + others)
        if not availability.sellable:
            raise InsufficientStock(product.id, max(availability.available_stock - others, 0), quantity)

    def _touch(self, cart: CartModel) -> None:
        now = utcnow()
        cart.updated_at = now
        cart.expires_at = now + self.ttl

    @staticmethod
    def _find(s: Session, user_id: str) -> Optional[CartModel]:
        return s.execute(
            select(CartModel)
            .where(CartModel.user_id == user_id)
            .options(selectinload(CartModel.items))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_or_create(self, s: Session, user_id: str) -> CartModel:
        cart = self._find(s, user_id)
        if cart is not None:
            if cart.expires_at <= utcnow():
                cart.items.clear()
            return cart
        try:
            # Savepoint: a concurrent first add for the same user only rolls back this block.
            with s.begin_nested():
                cart = CartModel(user_id=user_id, expires_at=utcnow() + self.ttl)
                s.add(cart)
            return cart
        except IntegrityError:
            cart = self._find(s, user_id)
            if cart is None:
                raise
            return cart

    def _line(self, s: Session, user_id: str, item_id: str):
        cart = self._find(s, user_id)
        if cart is None or cart.expires_at <= utcnow():
            raise NotFound(f"cart item {item_id} not found")
        for row in cart.items:
            if row.id == item_id:
                return cart, row
        raise NotFound(f"cart item {item_id} not found")
