"""Contracts for the collaborators this pipeline consumes but does not implement."""

from typing import Protocol

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Authenticated caller as reported by the auth collaborator."""

    id: int
    email: str | None = None


class PaymentGateway(Protocol):
    """Protocol for the payment collaborator consulted at export time."""

    async def is_paid(self, session_id: str) -> bool:
        """Return True if the batch session has been paid for."""
        ...


class UnpaidGateway:
    """Payment gateway that never reports a payment.

    Used when no payment collaborator is wired in; export then relies solely on
    a recorded ``paid_at``.
    """

    async def is_paid(self, session_id: str) -> bool:
        return False
