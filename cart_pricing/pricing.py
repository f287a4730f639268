import logging
from datetime import datetime
from typing import List, Optional

from .errors import CouponRedemptionError, NotFoundError
from .logic import compute_subtotal, validate_coupon
from .models import (
    CartLine,
    CartPricingResult,
    Coupon,
    CouponValidationResult,
    OfferApplicationResult,
    as_utc,
    utcnow,
)
from .offers import apply_offers_to_cart
from .storage import CouponRepository, OfferRepository, ProductCatalog

logger = logging.getLogger(__name__)


class PricingEngine:
    """
    Prices carts from offers and an optional coupon.

    Offers and the coupon are two independent tracks; their discounts are
    summed and the sum is clamped to the subtotal, so
    ``0 <= total <= subtotal`` for every result. Pricing reads offer and
    coupon state but never writes it; usage counters only move through
    ``redeem_coupon`` / ``confirm_order``.
    """

    def __init__(self, catalog: ProductCatalog, offers: OfferRepository, coupons: CouponRepository) -> None:
        self.catalog = catalog
        self.offers = offers
        self.coupons = coupons

    def resolve_categories(self, lines: List[CartLine]) -> List[CartLine]:
        missing = [line.productId for line in lines if line.category is None]
        if not missing:
            return list(lines)

        categories = {p.id: p.category for p in self.catalog.get_products_by_ids(missing)}
        return [
            line if line.category is not None
            else line.model_copy(update={"category": categories.get(line.productId)})
            for line in lines
        ]

    def apply_offers(
        self, lines: List[CartLine], subtotal: int, now: Optional[datetime] = None
    ) -> OfferApplicationResult:
        return apply_offers_to_cart(self.resolve_categories(lines), subtotal, self.offers, now)

    def validate_coupon(
        self,
        code: str,
        user_id: Optional[str],
        lines: List[CartLine],
        total_amount: int,
        now: Optional[datetime] = None,
    ) -> CouponValidationResult:
        return validate_coupon(code, user_id, lines, total_amount, self.coupons, self.catalog, now)

    def price_cart(
        self,
        lines: List[CartLine],
        coupon_code: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CartPricingResult:
        if now is None:
            now = utcnow()
        now = as_utc(now)

        subtotal = compute_subtotal(lines)
        offer_result = self.apply_offers(lines, subtotal, now)

        coupon_discount = 0
        applied_code = None
        if coupon_code:
            validation = self.validate_coupon(coupon_code, user_id, lines, subtotal, now)
            if validation.isValid:
                coupon_discount = validation.discountAmount
                applied_code = validation.coupon.code
            else:
                logger.warning("Dropping coupon %s: %s", coupon_code, validation.error)

        total_discount = min(offer_result.totalDiscount + coupon_discount, subtotal)
        return CartPricingResult(
            subtotal=subtotal,
            offerDiscount=offer_result.totalDiscount,
            couponDiscount=coupon_discount,
            totalDiscount=total_discount,
            total=subtotal - total_discount,
            freeShipping=offer_result.freeShipping,
            applicableOffers=offer_result.applicableOffers,
            couponCode=applied_code,
        )

    def redeem_coupon(
        self, code: str, user_id: str, order_id: str, now: Optional[datetime] = None
    ) -> Coupon:
        if now is None:
            now = utcnow()
        now = as_utc(now)

        coupon = self.coupons.get_by_code(code)
        if coupon is None:
            raise NotFoundError("COUPON_NOT_FOUND", "Coupon not found")

        updated = self.coupons.increment_usage(coupon.id, user_id, order_id, now)
        if updated is None:
            raise CouponRedemptionError("COUPON_LIMIT_REACHED", "Coupon usage limit reached")
        return updated

    def confirm_order(
        self,
        lines: List[CartLine],
        coupon_code: Optional[str],
        user_id: str,
        order_id: str,
        now: Optional[datetime] = None,
    ) -> CartPricingResult:
        if now is None:
            now = utcnow()
        now = as_utc(now)

        pricing = self.price_cart(lines, coupon_code, user_id, now)
        if pricing.couponCode:
            self.redeem_coupon(pricing.couponCode, user_id, order_id, now)
        for applied in pricing.applicableOffers:
            self.offers.increment_usage(applied.offerId)

        logger.info("Order %s confirmed for user %s, total %s", order_id, user_id, pricing.total)
        return pricing
