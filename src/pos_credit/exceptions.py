"""Exception hierarchy for the checkout engine.

Business rule violations are caused by caller input and are never retried.
``CommitFailed`` signals an infrastructure problem while reading or writing
the store; the ledger guarantees no partial state remains, so a retry is a
fresh attempt.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Tuple

if TYPE_CHECKING:
    from .constants import ViolationKind
    from .validation import Violation


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or transaction is unknown."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when a checkout is attempted without any line items."""


class ValidationFailure(BusinessRuleViolation):
    """Raised when a payment plan breaks one or more business rules.

    Every violation found during validation is carried together so the caller
    can present a complete correction list at once.
    """

    def __init__(self, violations: Tuple["Violation", ...]):
        self.violations = tuple(violations)
        summary = "; ".join(violation.message for violation in self.violations)
        super().__init__(f"Payment plan rejected: {summary}")

    @property
    def kinds(self) -> frozenset["ViolationKind"]:
        return frozenset(violation.kind for violation in self.violations)


class CommitFailed(Exception):
    """Raised when the ledger cannot read or persist state.

    Distinct from :class:`BusinessRuleViolation`: the inputs were acceptable
    but the store failed. Nothing partial is left behind.
    """
