import logging
from datetime import datetime
from typing import Callable, List, Optional

from .logic import calculate_discount, is_within_window
from .models import (
    AppliedOffer,
    BogoOffer,
    BundleOffer,
    CartLine,
    CategoryDiscountOffer,
    FlashSaleOffer,
    FreeShippingOffer,
    Offer,
    OfferApplicationResult,
    OfferMatch,
    ProductDiscountOffer,
    as_utc,
    utcnow,
)
from .storage import OfferRepository

logger = logging.getLogger(__name__)

NOT_APPLICABLE = OfferMatch(applicable=False)


def _matching_total(lines: List[CartLine], predicate: Callable[[CartLine], bool]) -> Optional[int]:
    matching = [line for line in lines if predicate(line)]
    if not matching:
        return None
    return sum(line.lineTotal for line in matching)


def _discounted_match(offer: Offer, matching_total: Optional[int], label: str) -> OfferMatch:
    if matching_total is None:
        return NOT_APPLICABLE
    discount = calculate_discount(
        matching_total, offer.discountType, offer.discountValue, offer.maxDiscountAmount
    )
    return OfferMatch(applicable=True, discountAmount=discount, description=f"{label}: {offer.title}")


def _match_flash_sale(offer: FlashSaleOffer, lines: List[CartLine], now: datetime) -> OfferMatch:
    if not is_within_window(offer.flashSaleStart, offer.flashSaleEnd, now):
        return NOT_APPLICABLE
    products = set(offer.applicableProducts)
    total = _matching_total(lines, lambda line: line.productId in products)
    return _discounted_match(offer, total, "Flash Sale")


def _match_category(offer: CategoryDiscountOffer, lines: List[CartLine]) -> OfferMatch:
    categories = set(offer.applicableCategories)
    total = _matching_total(lines, lambda line: line.category is not None and line.category in categories)
    return _discounted_match(offer, total, "Category Discount")


def _match_product(offer: ProductDiscountOffer, lines: List[CartLine]) -> OfferMatch:
    products = set(offer.applicableProducts)
    total = _matching_total(lines, lambda line: line.productId in products)
    return _discounted_match(offer, total, "Product Discount")


def _match_bogo(offer: BogoOffer, lines: List[CartLine]) -> OfferMatch:
    line = next((item for item in lines if item.productId == offer.bogoProductId), None)
    if line is None or line.quantity < offer.bogoBuyQuantity:
        return NOT_APPLICABLE

    free_units = (line.quantity // offer.bogoBuyQuantity) * offer.bogoGetQuantity
    free_units = min(free_units, line.quantity)
    return OfferMatch(
        applicable=True,
        discountAmount=free_units * line.unitPrice,
        description=f"BOGO: Buy {offer.bogoBuyQuantity}, Get {offer.bogoGetQuantity} Free",
    )


def _match_bundle(offer: BundleOffer, lines: List[CartLine]) -> OfferMatch:
    by_product = {}
    for line in lines:
        by_product.setdefault(line.productId, line)

    bundle_total = 0
    for item in offer.bundleProducts:
        line = by_product.get(item.productId)
        if line is None or line.quantity < item.quantity:
            return NOT_APPLICABLE
        bundle_total += line.unitPrice * item.quantity

    # may be zero or negative, the aggregator drops offers without a saving
    return OfferMatch(
        applicable=True,
        discountAmount=bundle_total - offer.bundlePrice,
        description=f"Bundle Offer: {offer.title}",
    )


def _match_free_shipping(offer: FreeShippingOffer, subtotal: int) -> OfferMatch:
    if subtotal < offer.freeShippingMinAmount:
        return NOT_APPLICABLE
    return OfferMatch(applicable=True, discountAmount=0, description=f"Free Shipping: {offer.title}")


def match_offer(
    offer: Offer, lines: List[CartLine], subtotal: int, now: Optional[datetime] = None
) -> OfferMatch:
    if now is None:
        now = utcnow()
    now = as_utc(now)

    if offer.minPurchaseAmount is not None and subtotal < offer.minPurchaseAmount:
        return NOT_APPLICABLE

    if isinstance(offer, FlashSaleOffer):
        return _match_flash_sale(offer, lines, now)
    if isinstance(offer, CategoryDiscountOffer):
        return _match_category(offer, lines)
    if isinstance(offer, ProductDiscountOffer):
        return _match_product(offer, lines)
    if isinstance(offer, BogoOffer):
        return _match_bogo(offer, lines)
    if isinstance(offer, BundleOffer):
        return _match_bundle(offer, lines)
    if isinstance(offer, FreeShippingOffer):
        return _match_free_shipping(offer, subtotal)
    raise TypeError(f"Unhandled offer type: {type(offer).__name__}")


def rank_offers(offers: List[Offer]) -> List[Offer]:
    # sorted() is stable, equal priorities keep creation order
    return sorted(offers, key=lambda o: -o.priority)


def apply_offers_to_cart(
    lines: List[CartLine],
    subtotal: int,
    offers: OfferRepository,
    now: Optional[datetime] = None,
) -> OfferApplicationResult:
    """
    Runs every active offer against the cart. Eligible offers stack; priority
    only decides the listing order. Free shipping offers are kept even though
    they carry no money discount. The summed discount is clamped to subtotal.
    """
    if now is None:
        now = utcnow()
    now = as_utc(now)

    applicable: List[AppliedOffer] = []
    total_discount = 0
    free_shipping = False

    for offer in rank_offers(offers.get_active_offers(now)):
        match = match_offer(offer, lines, subtotal, now)
        if not match.applicable:
            continue

        is_free_shipping = isinstance(offer, FreeShippingOffer)
        if not is_free_shipping and match.discountAmount <= 0:
            continue

        if is_free_shipping:
            free_shipping = True
        total_discount += match.discountAmount
        applicable.append(
            AppliedOffer(
                offerId=offer.id,
                offerType=offer.offerType,
                title=offer.title,
                description=match.description,
                discountAmount=match.discountAmount,
            )
        )

    total_discount = min(total_discount, subtotal)
    logger.debug("%d offers applied, discount %s of %s", len(applicable), total_discount, subtotal)
    return OfferApplicationResult(
        applicableOffers=applicable, totalDiscount=total_discount, freeShipping=free_shipping
    )
