from typing import Optional


class EngineError(ValueError):
    """Base for every failure an engine operation reports to its caller."""

    kind = "error"

    def __init__(self, message: str, *, entity: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity


class NotFoundError(EngineError):
    """Entity is absent or belongs to another family.

    Both cases raise the same message so existence never leaks across families.
    """

    kind = "not_found"

    def __init__(self, entity: str) -> None:
        super().__init__(f"{entity} not found", entity=entity)


class ValidationFailedError(EngineError):
    kind = "validation_failed"


class BusinessRuleViolation(EngineError):
    kind = "business_rule_violation"


class ConflictError(EngineError):
    kind = "conflict"


class OverallocationError(BusinessRuleViolation):
    pass


class NoActiveCategoriesError(BusinessRuleViolation):
    pass


class NoAvailableIncomeEventsError(BusinessRuleViolation):
    pass


class PaymentFullyAttributedError(BusinessRuleViolation):
    pass


class PaymentNotPaidError(BusinessRuleViolation):
    pass


class PaymentAlreadyPaidError(BusinessRuleViolation):
    pass


class AttributionExceedsPaymentError(BusinessRuleViolation):
    pass


class InsufficientIncomeError(BusinessRuleViolation):
    pass


class CategoryDeletionBlockedError(BusinessRuleViolation):
    pass


class InactiveCategoryError(BusinessRuleViolation):
    pass
