"""
Entitlement engine error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- EntitlementStoreError: store read failed or timed out (read path, always caught)
- SubscriptionNotFoundError: mutation named a subscription that does not exist
- SubscriptionMutationError: mutation could not be applied
- UnknownModuleError: module id is not in the catalog
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class EntitlementStoreError(EntitlementError):
    """
    Raised when the entitlement store fails or exceeds its deadline.

    Never escapes the capability read path; the facade converts it to the
    core-only default.
    """

    error_code = "ENTITLEMENT_STORE_UNAVAILABLE"

    def __init__(
        self,
        operation: str,
        detail: str,
        cause: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.detail = detail
        self.cause = cause
        super().__init__(f"Entitlement store {operation} failed: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "operation": self.operation,
            "message": self.detail,
        }


class SubscriptionNotFoundError(EntitlementError):
    error_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: int):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "subscription_id": self.subscription_id,
        }


class SubscriptionMutationError(EntitlementError):
    """Raised when an administrative mutation cannot be applied."""

    error_code = "SUBSCRIPTION_MUTATION_FAILED"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "operation": self.operation,
            "message": self.detail,
        }


class UnknownModuleError(EntitlementError, ValueError):
    """Raised at the catalog boundary for a module id outside the catalog."""

    error_code = "UNKNOWN_MODULE"

    def __init__(self, module_id: object):
        self.module_id = module_id
        super().__init__(f"Unknown module package: {module_id!r}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "module_id": str(self.module_id),
        }
