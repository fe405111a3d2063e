"""Read-only view of the internal credit ledger."""

from byokrouter.domain.interfaces.credit_ledger import CreditLedger


class CreditLedgerReader:
    """Answers whether a user has spendable internal credit.

    Reads the committed balance on every call; nothing is cached, so a
    reservation made by a concurrent request is visible immediately.
    """

    def __init__(self, credit_ledger: CreditLedger) -> None:
        self._ledger = credit_ledger

    async def get_balance(self, user_id: str) -> int:
        return await self._ledger.get_balance(user_id)

    async def has_spendable_credit(self, user_id: str) -> bool:
        """True when the user's balance is above zero.

        Raises:
            LedgerError: If the balance cannot be read.
        """
        return await self._ledger.get_balance(user_id) > 0
