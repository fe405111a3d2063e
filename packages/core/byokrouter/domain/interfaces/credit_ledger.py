"""CreditLedger interface for the internal credit balance and its transactions."""

from abc import ABC, abstractmethod
from typing import Any

from byokrouter.domain.models.usage import CreditReservation, CreditTransaction


class LedgerError(Exception):
    """Raised when credit ledger operations fail."""

    pass


class InsufficientCreditError(LedgerError):
    """Raised when a reservation would take the balance below zero."""

    def __init__(self, user_id: str, requested: int, available: int) -> None:
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credit for user {user_id}: requested {requested}, available {available}"
        )


class CreditLedger(ABC):
    """Abstract internal credit ledger.

    A debit is two-phase: reserve() places a hold with one conditional atomic
    update (check and decrement together), then commit() settles it for the
    actual cost and writes the transaction row, or release() returns the hold.
    The balance never goes negative.
    """

    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        """Return the most recently committed balance (0 for unknown users).

        Raises:
            LedgerError: If the read fails.
        """
        pass

    @abstractmethod
    async def add_credits(self, user_id: str, amount: int) -> int:
        """Grant credits to a user.

        Returns:
            The new balance.

        Raises:
            LedgerError: If the write fails.
        """
        pass

    @abstractmethod
    async def reserve(
        self,
        user_id: str,
        amount: int,
        reference_id: str | None = None,
    ) -> CreditReservation:
        """Atomically hold `amount` credits if the balance covers it.

        Raises:
            InsufficientCreditError: If the balance is below amount.
            LedgerError: If the write fails.
        """
        pass

    @abstractmethod
    async def commit(
        self,
        reservation: CreditReservation,
        actual_amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Settle a reservation, refunding any unused part, and record it.

        actual_amount is clamped to the reserved amount.

        Raises:
            LedgerError: If the reservation is unknown or the write fails.
        """
        pass

    @abstractmethod
    async def release(self, reservation: CreditReservation) -> None:
        """Return a whole reservation to the balance.

        Releasing an already settled reservation is a no-op.

        Raises:
            LedgerError: If the write fails.
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        """Return the user's transactions, newest first.

        Raises:
            LedgerError: If the read fails.
        """
        pass
