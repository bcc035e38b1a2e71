# promo_engine/services/exceptions.py

class ServiceError(Exception):
    """Base class for service-layer errors."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class DomainValidationError(ServiceError):
    """Invalid domain input."""
    pass


class ContextValidationError(DomainValidationError):
    """Malformed cart or subtotal; the whole evaluation is aborted."""
    pass


class PromotionConfigurationError(DomainValidationError):
    """A promotion rule that can never produce a valid benefit."""

    def __init__(self, detail: str, promotion_id: str | None = None):
        self.promotion_id = promotion_id
        super().__init__(detail)


class IntegrityValidationError(DomainValidationError):
    """A computed benefit failed server-side recomputation or bounds."""

    def __init__(self, detail: str, promotion_id: str | None = None, check: str = "discount"):
        self.promotion_id = promotion_id
        self.check = check
        super().__init__(detail)


class PromotionError(ServiceError):
    """Error tied to a single promotion."""

    def __init__(self, detail: str, promotion_id: str):
        self.promotion_id = promotion_id
        super().__init__(detail)


class PromotionExpiredError(PromotionError):
    """Promotion is not active or outside its validity window."""
    pass


class PromotionUsageLimitError(PromotionError):
    """Global or per-customer usage limit already reached."""
    pass


class NotFoundError(ServiceError):
    """Resource not found."""
    pass


class ConflictError(ServiceError):
    """State conflict for the requested operation."""
    pass
