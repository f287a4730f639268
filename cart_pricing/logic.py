import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from . import config
from .models import Coupon, CouponValidationResult, CartLine, as_utc, utcnow
from .storage import CouponRepository, ProductCatalog

logger = logging.getLogger(__name__)


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_subtotal(lines: Iterable[CartLine]) -> int:
    return sum(line.lineTotal for line in lines)


def format_money(amount: int) -> str:
    # 100 minor units -> 2 decimal places, 1000 -> 3, 1 -> 0
    places = len(str(config.CURRENCY_MINOR_UNITS)) - 1
    value = Decimal(amount) / Decimal(config.CURRENCY_MINOR_UNITS)
    return f"{config.CURRENCY_SYMBOL}{value:.{places}f}"


def calculate_discount(
    base_amount: int,
    discount_type: str,
    discount_value: float,
    max_discount_amount: Optional[int] = None,
) -> int:
    base_amount = max(0, base_amount)
    if discount_type == "percentage":
        # str() so 12.5 stays exactly 12.5
        discount = round_half_up(Decimal(base_amount) * Decimal(str(discount_value)) / 100)
        if max_discount_amount is not None:
            discount = min(discount, max_discount_amount)
    elif discount_type == "fixed":
        discount = round_half_up(Decimal(str(discount_value)))
    else:
        discount = 0

    # a discount never exceeds what it discounts
    return max(0, min(discount, base_amount))


def is_within_window(start: datetime, end: datetime, now: datetime) -> bool:
    return start <= now <= end


def count_user_usages(coupon: Coupon, user_id: Optional[str]) -> int:
    if user_id is None:
        return 0
    return sum(1 for usage in coupon.usageHistory if usage.userId == user_id)


def has_remaining_usage(coupon: Coupon) -> bool:
    if coupon.usageLimit is None:
        return True
    return coupon.usageCount < coupon.usageLimit


def has_remaining_user_usage(coupon: Coupon, user_id: Optional[str]) -> bool:
    if coupon.usageLimitPerUser is None:
        return True
    return count_user_usages(coupon, user_id) < coupon.usageLimitPerUser


def is_applicable_to_cart(coupon: Coupon, lines: List[CartLine], catalog: ProductCatalog) -> bool:
    if coupon.applicableTo == "category":
        products = catalog.get_products_by_ids(line.productId for line in lines)
        return any(p.category in coupon.applicableCategories for p in products)

    if coupon.applicableTo == "product":
        return any(line.productId in coupon.applicableProducts for line in lines)

    return True


def _invalid(error: str) -> CouponValidationResult:
    return CouponValidationResult(isValid=False, discountAmount=0, error=error)


def validate_coupon(
    code: str,
    user_id: Optional[str],
    lines: List[CartLine],
    total_amount: int,
    coupons: CouponRepository,
    catalog: ProductCatalog,
    now: Optional[datetime] = None,
) -> CouponValidationResult:
    """
    Checks run in order and stop at the first failure:
     1. code exists (case-insensitive)
     2. coupon is active
     3. now within [validFrom, validUntil]
     4. global usage limit
     5. per-user usage limit
     6. minimum purchase
     7. applicability to the cart's products/categories
    The discount applies to the whole total_amount. Nothing is consumed here.
    """
    if now is None:
        now = utcnow()
    now = as_utc(now)

    coupon = coupons.get_by_code(code)
    if coupon is None:
        return _invalid("Coupon not found")

    if not coupon.isActive:
        return _invalid("Coupon is not active")

    if now < coupon.validFrom:
        return _invalid("Coupon is not yet valid")

    if now > coupon.validUntil:
        return _invalid("Coupon has expired")

    if not has_remaining_usage(coupon):
        return _invalid("Coupon usage limit reached")

    if not has_remaining_user_usage(coupon, user_id):
        return _invalid("You have reached the usage limit for this coupon")

    if coupon.minPurchaseAmount is not None and total_amount < coupon.minPurchaseAmount:
        return _invalid(f"Minimum purchase amount of {format_money(coupon.minPurchaseAmount)} required")

    if not is_applicable_to_cart(coupon, lines, catalog):
        return _invalid("Coupon is not applicable to items in your cart")

    discount = calculate_discount(
        total_amount, coupon.discountType, coupon.discountValue, coupon.maxDiscountAmount
    )
    logger.debug("Coupon %s valid for total %s, discount %s", coupon.code, total_amount, discount)
    return CouponValidationResult(isValid=True, coupon=coupon, discountAmount=discount)
