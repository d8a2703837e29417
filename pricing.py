"""
Pricing Engine

Unit price = (variant price, or base price when no variant) + sum of add-ons.
Cart totals: subtotal + delivery fee + tax + discount (discount <= 0),
floored at zero. Tax is charged on the subtotal only.
"""

from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

import config
from schemas import Addon, CartLine, MenuItem, Variant


class DeliveryFeeRule(BaseModel):
    fee: float = Field(config.DELIVERY_FEE, ge=0)
    free_above: Optional[float] = Field(None, ge=0, description="Subtotal from which delivery is free")

    def amount(self, subtotal: float, order_type: str = "delivery") -> float:
        if order_type != "delivery":
            return 0.0
        if self.free_above is not None and subtotal >= self.free_above:
            return 0.0
        return self.fee


class TaxRule(BaseModel):
    rate: float = Field(config.TAX_RATE, ge=0)

    def amount(self, subtotal: float) -> float:
        return subtotal * self.rate


class DiscountRule(BaseModel):
    percentage: float = Field(0.0, ge=0, le=100)
    flat: float = Field(0.0, ge=0)

    def amount(self, subtotal: float) -> float:
        """Non-positive adjustment, never larger than the subtotal."""
        discount = subtotal * self.percentage / 100 + self.flat
        if discount <= 0:
            return 0.0
        return -min(discount, subtotal)


class PricingRules(BaseModel):
    delivery: DeliveryFeeRule = DeliveryFeeRule()
    tax: TaxRule = TaxRule()
    discount: DiscountRule = DiscountRule()


class CartTotals(BaseModel):
    subtotal: float = 0.0
    delivery_fee: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float = 0.0


def price_line(item: MenuItem, variant: Optional[Variant] = None, addons: Iterable[Addon] = ()) -> float:
    base = variant.price if variant is not None else item.price
    return round(base + sum(addon.price for addon in addons), 2)


def line_total(line: CartLine) -> float:
    return round(line.unit_price * line.quantity, 2)


def cart_totals(lines: Sequence[CartLine], delivery_rule: Optional[DeliveryFeeRule] = None,
                tax_rule: Optional[TaxRule] = None, discount_rule: Optional[DiscountRule] = None,
                order_type: str = "delivery") -> CartTotals:
    delivery_rule = delivery_rule or DeliveryFeeRule()
    tax_rule = tax_rule or TaxRule()
    discount_rule = discount_rule or DiscountRule()

    if not lines:
        return CartTotals()
    subtotal = sum(line_total(line) for line in lines)
    delivery_fee = delivery_rule.amount(subtotal, order_type)
    tax = tax_rule.amount(subtotal)
    discount = discount_rule.amount(subtotal)
    total = max(subtotal + delivery_fee + tax + discount, 0.0)
    return CartTotals(
        subtotal=round(subtotal, 2),
        delivery_fee=round(delivery_fee, 2),
        tax=round(tax, 2),
        discount=round(discount, 2),
        total=round(total, 2),
    )


def totals_for(lines: List[CartLine], rules: PricingRules, order_type: str = "delivery") -> CartTotals:
    return cart_totals(lines, rules.delivery, rules.tax, rules.discount, order_type=order_type)
