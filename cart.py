"""
Cart Aggregator

A Cart belongs to one client session and is passed explicitly to whoever
needs it; there is no process-wide cart. All lines share one restaurant.
Every mutation is saved to the session's storage and pushes freshly
computed totals to the registered listeners.
"""

import hashlib
import json
import logging
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel

import pricing
from errors import ConflictError, NotFoundError, Result, ValidationError, returns_result
from schemas import Addon, CartLine, MenuItem

logger = logging.getLogger(__name__)


def make_line_id(item_id: str, variant_name: Optional[str], addon_names: Iterable[str]) -> str:
    """Stable key for (item, variant, set of add-ons); lines with equal keys merge."""
    key = json.dumps([item_id, variant_name, sorted(set(addon_names))])
    return f"{item_id}-{hashlib.sha1(key.encode()).hexdigest()[:16]}"


class CartState(BaseModel):
    restaurant_id: Optional[str] = None
    lines: List[CartLine] = []


class CartResult(Result):
    lines: List[CartLine] = []
    count: int = 0
    totals: Optional[pricing.CartTotals] = None


class DocumentCartStorage:
    """Keeps each session's cart in the `carts` collection."""

    def __init__(self, store):
        self.store = store

    def load(self, session_id: str) -> CartState:
        doc = self.store.get("carts", session_id)
        if not doc:
            return CartState()
        return CartState(restaurant_id=doc.get("restaurant_id"), lines=doc.get("lines", []))

    def save(self, session_id: str, state: CartState):
        self.store.upsert("carts", session_id, state)


class Cart:
    def __init__(self, session_id: str, storage: DocumentCartStorage,
                 rules: Optional[pricing.PricingRules] = None, order_type: str = "delivery"):
        self.session_id = session_id
        self.storage = storage
        self.rules = rules or pricing.PricingRules()
        self.order_type = order_type
        self._state = storage.load(session_id)
        self._listeners: List[Callable[["Cart", pricing.CartTotals], None]] = []

    @property
    def restaurant_id(self) -> Optional[str]:
        return self._state.restaurant_id

    @property
    def count(self) -> int:
        return sum(line.quantity for line in self._state.lines)

    def get_cart(self) -> List[CartLine]:
        return [line.model_copy(deep=True) for line in self._state.lines]

    def totals(self, order_type: Optional[str] = None) -> pricing.CartTotals:
        return pricing.totals_for(self._state.lines, self.rules, order_type or self.order_type)

    def subscribe(self, listener: Callable[["Cart", pricing.CartTotals], None]):
        self._listeners.append(listener)

    def _find(self, line_id: str) -> CartLine:
        for line in self._state.lines:
            if line.line_id == line_id:
                return line
        raise NotFoundError(f"Cart line not found: {line_id}")

    def _commit(self) -> CartResult:
        if not self._state.lines:
            self._state.restaurant_id = None
        self.storage.save(self.session_id, self._state)
        totals = self.totals()
        for listener in self._listeners:
            listener(self, totals)
        return CartResult(lines=self.get_cart(), count=self.count, totals=totals)

    @returns_result(CartResult)
    def add_to_cart(self, item: MenuItem, quantity: int, restaurant_id: str,
                    variant: Optional[str] = None, addons: Iterable[str] = (),
                    replace: bool = False) -> CartResult:
        """Add `quantity` of `item`; variant and add-ons are given by name.

        A cart never mixes restaurants: an item from another restaurant is
        rejected with ConflictError unless `replace` is set, in which case
        the current cart is dropped first.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        if not item.available:
            raise ValidationError(f"{item.name} is currently unavailable", field="item_id")
        if item.restaurant_id != restaurant_id:
            raise ValidationError("Item does not belong to this restaurant", field="restaurant_id")

        selected_variant = None
        if variant is not None:
            selected_variant = next((v for v in item.variants if v.name == variant), None)
            if selected_variant is None:
                raise ValidationError(f"Unknown variant '{variant}' for {item.name}", field="variant")

        selected_addons: List[Addon] = []
        for name in sorted(set(addons)):
            addon = next((a for a in item.addons if a.name == name), None)
            if addon is None:
                raise ValidationError(f"Unknown add-on '{name}' for {item.name}", field="addons")
            selected_addons.append(addon)

        if self._state.restaurant_id and self._state.restaurant_id != restaurant_id:
            if not replace:
                raise ConflictError("Cart contains items from another restaurant", field="restaurant_id")
            logger.info("cart %s: replacing items from restaurant %s", self.session_id, self._state.restaurant_id)
            self._state = CartState()

        line_id = make_line_id(item.id, variant, [a.name for a in selected_addons])
        existing = next((line for line in self._state.lines if line.line_id == line_id), None)
        if existing is not None:
            existing.quantity += quantity
        else:
            self._state.lines.append(CartLine(
                line_id=line_id,
                item_id=item.id,
                restaurant_id=restaurant_id,
                name=item.name,
                variant=selected_variant,
                addons=selected_addons,
                quantity=quantity,
                unit_price=pricing.price_line(item, selected_variant, selected_addons),
            ))
        self._state.restaurant_id = restaurant_id
        return self._commit()

    @returns_result(CartResult)
    def update_quantity(self, line_id: str, quantity: int) -> CartResult:
        line = self._find(line_id)
        if quantity <= 0:
            self._state.lines.remove(line)
        else:
            line.quantity = quantity
        return self._commit()

    @returns_result(CartResult)
    def remove_line(self, line_id: str) -> CartResult:
        self._state.lines.remove(self._find(line_id))
        return self._commit()

    def clear(self) -> CartResult:
        self._state = CartState()
        return self._commit()
