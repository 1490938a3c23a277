"""
Service error hierarchy.

Every error carries the HTTP status it maps to; main.py renders them as
{"success": false, "error": message}.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = "Something went wrong!"):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class NotFound(ServiceError):
    status_code = 404


class BusinessRuleViolation(ServiceError):
    status_code = 400


class InsufficientStock(BusinessRuleViolation):
    def __init__(self, message: str = "Insufficient stock"):
        super().__init__(message)


class EmptyCart(BusinessRuleViolation):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class DuplicateReview(BusinessRuleViolation):
    def __init__(self, message: str = "You have already reviewed this product for this order"):
        super().__init__(message)


class DuplicateDiscount(BusinessRuleViolation):
    def __init__(
        self,
        message: str = "Product already has an active discount. Please end the current discount before creating a new one.",
    ):
        super().__init__(message)


class ExpiredDiscountReactivation(BusinessRuleViolation):
    def __init__(self, message: str = "Cannot activate an expired discount. Please create a new one."):
        super().__init__(message)


class AuthError(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403
