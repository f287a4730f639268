import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConflictError
from .models import Cart, Coupon, CouponUsage, Offer, Product, as_utc, parse_offer

logger = logging.getLogger(__name__)


class ProductCatalog:
    def __init__(self) -> None:
        # id -> Product
        self._products: Dict[str, Product] = {}

    def add(self, product: Product) -> Product:
        self._products[product.id] = product
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def get_products_by_ids(self, product_ids: Iterable[str]) -> List[Product]:
        found = []
        for product_id in dict.fromkeys(product_ids):
            product = self._products.get(product_id)
            if product is not None:
                found.append(product)
        return found

    def clear(self) -> None:
        self._products.clear()


class OfferRepository:
    # fields owned by the repository, never taken from an edit
    PROTECTED_FIELDS = ("id", "offerType", "usageCount", "createdAt")

    def __init__(self) -> None:
        # id -> Offer, insertion order is creation order
        self._offers: Dict[str, Offer] = {}
        self._lock = threading.Lock()

    def add(self, offer: Offer) -> Offer:
        with self._lock:
            self._offers[offer.id] = offer
        return offer

    def get(self, offer_id: str) -> Optional[Offer]:
        return self._offers.get(offer_id)

    def list_offers(
        self,
        offer_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        category: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> List[Offer]:
        offers = list(self._offers.values())
        if offer_type is not None:
            offers = [o for o in offers if o.offerType == offer_type]
        if is_active is not None:
            offers = [o for o in offers if o.isActive == is_active]
        if category is not None:
            offers = [o for o in offers if category in getattr(o, "applicableCategories", [])]
        if product_id is not None:
            offers = [o for o in offers if product_id in _referenced_products(o)]

        # priority desc, newest first within a priority
        return sorted(offers, key=lambda o: (-o.priority, -o.createdAt.timestamp()))

    def get_active_offers(self, now: datetime) -> List[Offer]:
        now = as_utc(now)
        return [
            offer for offer in list(self._offers.values())
            if offer.isActive and offer.validFrom <= now <= offer.validUntil
        ]

    def update_fields(self, offer_id: str, changes: Dict[str, Any]) -> Optional[Offer]:
        """
        Applies ``changes`` to the stored offer. The merge happens under the
        lock against the current copy, so a concurrent usage increment is kept.
        Raises pydantic's ValidationError when the result is not a valid offer.
        """
        with self._lock:
            current = self._offers.get(offer_id)
            if current is None:
                return None
            editable = {k: v for k, v in changes.items() if k not in self.PROTECTED_FIELDS}
            updated = parse_offer({**current.model_dump(), **editable})
            self._offers[offer_id] = updated
        return updated

    def delete(self, offer_id: str) -> bool:
        with self._lock:
            return self._offers.pop(offer_id, None) is not None

    def increment_usage(self, offer_id: str) -> Optional[Offer]:
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None:
                return None
            updated = offer.model_copy(update={"usageCount": offer.usageCount + 1})
            self._offers[offer_id] = updated
        return updated

    def clear(self) -> None:
        with self._lock:
            self._offers.clear()


def _referenced_products(offer: Offer) -> List[str]:
    ids = list(getattr(offer, "applicableProducts", []))
    ids.extend(item.productId for item in getattr(offer, "bundleProducts", []))
    bogo_product = getattr(offer, "bogoProductId", None)
    if bogo_product:
        ids.append(bogo_product)
    return ids


class CouponRepository:
    # identity and usage bookkeeping are not editable
    PROTECTED_FIELDS = ("id", "code", "usageCount", "usageHistory", "createdAt")

    def __init__(self) -> None:
        # CODE -> Coupon
        self._coupons: Dict[str, Coupon] = {}
        self._lock = threading.Lock()

    def add(self, coupon: Coupon) -> Coupon:
        with self._lock:
            if coupon.code in self._coupons:
                raise ConflictError("COUPON_EXISTS", "Coupon code already exists")
            self._coupons[coupon.code] = coupon
        return coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        return self._coupons.get(code.strip().upper())

    def get_by_id(self, coupon_id: str) -> Optional[Coupon]:
        for coupon in self._coupons.values():
            if coupon.id == coupon_id:
                return coupon
        return None

    def list_coupons(self, is_active: Optional[bool] = None) -> List[Coupon]:
        coupons = list(self._coupons.values())
        if is_active is not None:
            coupons = [c for c in coupons if c.isActive == is_active]
        return sorted(coupons, key=lambda c: c.createdAt, reverse=True)

    def update_fields(self, code: str, changes: Dict[str, Any]) -> Optional[Coupon]:
        """
        Applies ``changes`` to the stored coupon. Usage bookkeeping always
        comes from the current copy read under the lock, so a redemption that
        lands while an edit is in flight is never overwritten.
        Raises pydantic's ValidationError when the result is not a valid coupon.
        """
        with self._lock:
            current = self._coupons.get(code.strip().upper())
            if current is None:
                return None
            editable = {k: v for k, v in changes.items() if k not in self.PROTECTED_FIELDS}
            updated = Coupon.model_validate({**current.model_dump(), **editable})
            self._coupons[updated.code] = updated
        return updated

    def delete(self, code: str) -> bool:
        with self._lock:
            return self._coupons.pop(code.strip().upper(), None) is not None

    def increment_usage(
        self, coupon_id: str, user_id: str, order_id: str, used_at: datetime
    ) -> Optional[Coupon]:
        """
        Conditional increment-and-append. Returns the updated coupon, or None
        when the coupon is unknown or a usage limit has no room left.
        """
        with self._lock:
            coupon = next((c for c in self._coupons.values() if c.id == coupon_id), None)
            if coupon is None:
                return None

            if coupon.usageLimit is not None and coupon.usageCount >= coupon.usageLimit:
                return None

            if coupon.usageLimitPerUser is not None:
                used = sum(1 for usage in coupon.usageHistory if usage.userId == user_id)
                if used >= coupon.usageLimitPerUser:
                    return None

            history = coupon.usageHistory + [CouponUsage(userId=user_id, orderId=order_id, usedAt=used_at)]
            updated = coupon.model_copy(update={"usageCount": coupon.usageCount + 1, "usageHistory": history})
            self._coupons[coupon.code] = updated

        logger.info("Coupon %s redeemed by user %s for order %s", updated.code, user_id, order_id)
        return updated

    def clear(self) -> None:
        with self._lock:
            self._coupons.clear()


class CartRepository:
    def __init__(self) -> None:
        # userId -> Cart
        self._carts: Dict[str, Cart] = {}

    def get(self, user_id: str) -> Optional[Cart]:
        return self._carts.get(user_id)

    def get_or_create(self, user_id: str) -> Cart:
        cart = self._carts.get(user_id)
        if cart is None:
            cart = Cart(userId=user_id)
            self._carts[user_id] = cart
        return cart

    def save(self, cart: Cart) -> Cart:
        self._carts[cart.userId] = cart
        return cart

    def clear(self) -> None:
        self._carts.clear()


# Default in-memory stores used by the HTTP app
CATALOG = ProductCatalog()
OFFERS_DB = OfferRepository()
COUPONS_DB = CouponRepository()
CARTS_DB = CartRepository()
