class PricingError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class NotFoundError(PricingError):
    pass


class ConflictError(PricingError):
    pass


class CartError(PricingError):
    pass


class CouponRedemptionError(PricingError):
    pass
