"""Credits ledger error taxonomy."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""

    public_message = "Credits service error."


class InsufficientFundsError(LedgerError):
    """A charge was attempted against a balance that cannot cover it."""

    public_message = "Insufficient credits. Top up credits to continue."

    def __init__(self, required: int, available: int, operation_id: str | None = None) -> None:
        self.required = int(required)
        self.available = int(available)
        self.operation_id = operation_id
        super().__init__(
            f"Insufficient credits. Required: {self.required}, available: {self.available}."
        )


class NotFoundError(LedgerError):
    """A referenced ledger entity does not exist."""

    public_message = "Not found."

    def __init__(self, message: str, public_message: str | None = None) -> None:
        if public_message:
            self.public_message = public_message
        super().__init__(message)


class AccountNotFoundError(NotFoundError):
    public_message = "Account not found."

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class PricingUnavailableError(NotFoundError):
    """Operation id missing from the cost catalog (unseeded or inactive)."""

    public_message = "Pricing is temporarily unavailable. Try again later."

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(f"Operation '{operation_id}' not found in credit catalog")


class LedgerValidationError(LedgerError):
    """A transaction does not follow from the stored balance."""

    public_message = "Internal ledger error."


class StorageError(LedgerError):
    """Persistence failed; nothing from the attempted mutation is visible."""

    public_message = "Credits service temporarily unavailable. Try again."


class DuplicateTransactionError(LedgerError):
    """A purchase for the same external resource id is already recorded."""

    public_message = "Transaction already recorded."

    def __init__(self, resource_id: str | None) -> None:
        self.resource_id = resource_id
        super().__init__(f"Transaction for resource {resource_id} already recorded")
