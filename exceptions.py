"""
Business-rule errors raised by the service layer.

All of them subclass ValueError, so callers catching ValueError still see them.
"""


class BusinessError(ValueError):
    """A deterministic business-rule rejection. Never retried."""


class ResourceNotFoundError(BusinessError):
    pass


class PromotionInvalidError(BusinessError):
    """Promotion unknown, inactive, outside its window or exhausted."""


class PromotionNotApplicableError(BusinessError):
    """Promotion is valid but the order does not qualify (minimum not met)."""


class InsufficientPointsError(BusinessError):
    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(
            f"Not enough points to redeem this reward: "
            f"balance {balance}, required {required}"
        )


class InvalidStatusTransitionError(BusinessError):
    pass
