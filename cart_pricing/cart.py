import logging
from datetime import datetime
from typing import Optional, Tuple

from .errors import CartError, NotFoundError
from .logic import compute_subtotal
from .models import Cart, CartLine, CartPricingResult, Product
from .pricing import PricingEngine
from .storage import CartRepository

logger = logging.getLogger(__name__)


class CartService:
    """
    Cart mutations. Every change re-prices from scratch and re-validates a
    stored coupon; a coupon that stops validating is detached instead of
    failing the request.
    """

    def __init__(self, engine: PricingEngine, carts: CartRepository) -> None:
        self.engine = engine
        self.carts = carts

    # -- Queries ------------------------------------------------------------

    def get_cart(self, user_id: str) -> Cart:
        # reads never create a stored cart
        cart = self.carts.get(user_id)
        return cart if cart is not None else Cart(userId=user_id)

    def get_cart_pricing(self, user_id: str, now: Optional[datetime] = None) -> Tuple[Cart, CartPricingResult]:
        cart = self.carts.get(user_id)
        if cart is None:
            cart = Cart(userId=user_id)
        elif cart.couponCode:
            self._revalidate_coupon(cart, now)
            self.carts.save(cart)
        pricing = self.engine.price_cart(cart.items, cart.couponCode, user_id, now)
        return cart, pricing

    # -- Mutations ----------------------------------------------------------

    def add_item(self, user_id: str, product_id: str, quantity: int, now: Optional[datetime] = None) -> Cart:
        cart = self.carts.get_or_create(user_id)
        product = self._get_product(product_id)

        if product.stock < quantity:
            raise CartError("INSUFFICIENT_STOCK", "Insufficient stock")

        index = self._find_item(cart, product_id)
        if index is not None:
            new_quantity = cart.items[index].quantity + quantity
            if product.stock < new_quantity:
                raise CartError("INSUFFICIENT_STOCK", "Insufficient stock")
            cart.items[index] = self._line_for(product, new_quantity)
        else:
            cart.items.append(self._line_for(product, quantity))

        self._revalidate_coupon(cart, now)
        return self.carts.save(cart)

    def update_item(self, user_id: str, product_id: str, quantity: int, now: Optional[datetime] = None) -> Cart:
        cart = self._get_existing_cart(user_id)

        index = self._find_item(cart, product_id)
        if index is None:
            raise NotFoundError("ITEM_NOT_FOUND", "Item not found in cart")

        product = self._get_product(product_id)
        if product.stock < quantity:
            raise CartError("INSUFFICIENT_STOCK", "Insufficient stock")

        cart.items[index] = self._line_for(product, quantity)
        self._revalidate_coupon(cart, now)
        return self.carts.save(cart)

    def remove_item(self, user_id: str, product_id: str, now: Optional[datetime] = None) -> Cart:
        cart = self._get_existing_cart(user_id)
        cart.items = [line for line in cart.items if line.productId != product_id]
        self._revalidate_coupon(cart, now)
        return self.carts.save(cart)

    def clear_cart(self, user_id: str) -> Cart:
        cart = self.carts.get(user_id)
        if cart is None:
            return Cart(userId=user_id)
        cart.items = []
        self._detach_coupon(cart)
        return self.carts.save(cart)

    def apply_coupon(self, user_id: str, code: str, now: Optional[datetime] = None) -> Cart:
        cart = self.carts.get(user_id)
        if cart is None or not cart.items:
            raise CartError("CART_EMPTY", "Cart is empty")

        validation = self.engine.validate_coupon(code, user_id, cart.items, compute_subtotal(cart.items), now)
        if not validation.isValid:
            raise CartError("INVALID_COUPON", validation.error)

        cart.couponCode = validation.coupon.code
        cart.discountAmount = validation.discountAmount
        return self.carts.save(cart)

    def remove_coupon(self, user_id: str) -> Cart:
        cart = self._get_existing_cart(user_id)
        self._detach_coupon(cart)
        return self.carts.save(cart)

    def checkout(self, user_id: str, order_id: str, now: Optional[datetime] = None) -> CartPricingResult:
        cart = self.carts.get(user_id)
        if cart is None or not cart.items:
            raise CartError("CART_EMPTY", "Cart is empty")

        self._revalidate_coupon(cart, now)
        pricing = self.engine.confirm_order(cart.items, cart.couponCode, user_id, order_id, now)
        self.clear_cart(user_id)
        return pricing

    # -- Helpers ------------------------------------------------------------

    def _get_existing_cart(self, user_id: str) -> Cart:
        cart = self.carts.get(user_id)
        if cart is None:
            raise NotFoundError("CART_NOT_FOUND", "Cart not found")
        return cart

    def _get_product(self, product_id: str) -> Product:
        product = self.engine.catalog.get_product(product_id)
        if product is None:
            raise NotFoundError("PRODUCT_NOT_FOUND", "Product not found")
        return product

    @staticmethod
    def _find_item(cart: Cart, product_id: str) -> Optional[int]:
        for index, line in enumerate(cart.items):
            if line.productId == product_id:
                return index
        return None

    @staticmethod
    def _line_for(product: Product, quantity: int) -> CartLine:
        # unit price is refreshed from the catalog on every change
        return CartLine(productId=product.id, quantity=quantity, unitPrice=product.price, category=product.category)

    @staticmethod
    def _detach_coupon(cart: Cart) -> None:
        cart.couponCode = None
        cart.discountAmount = 0

    def _revalidate_coupon(self, cart: Cart, now: Optional[datetime] = None) -> None:
        if not cart.couponCode:
            return

        validation = self.engine.validate_coupon(
            cart.couponCode, cart.userId, cart.items, compute_subtotal(cart.items), now
        )
        if validation.isValid:
            cart.discountAmount = validation.discountAmount
            return

        logger.warning("Coupon %s became invalid for cart of %s, removing: %s",
                       cart.couponCode, cart.userId, validation.error)
        self._detach_coupon(cart)
