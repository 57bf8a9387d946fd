"""
Credit ledger gateway.

Credits are reserved (deducted) synchronously at admission and refunded at
most once when the background workflow fails irrecoverably. Every movement
is mirrored into credit_transactions for reconciliation.
"""

import json
import logging
from typing import Literal, Optional

from supabase import Client

from .store import _get_service_client

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
TRANSACTIONS_TABLE = "credit_transactions"


class InsufficientCreditsError(ValueError):
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Need {required} credits but only {available} available."
        )


class CreditLedger:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = _get_service_client()
        return self._client

    def get_balance(self, user_id: str) -> int:
        result = self.sb.table(PROFILES_TABLE).select("credit_balance").eq("id", user_id).limit(1).execute()
        rows = result.data or []
        if not rows:
            raise LookupError(f"No credit profile for user {user_id}")
        return int(rows[0].get("credit_balance") or 0)

    def check_balance(self, user_id: str, required: int) -> int:
        """Return the current balance, raising if it does not cover `required`."""
        balance = self.get_balance(user_id)
        if balance < required:
            raise InsufficientCreditsError(required, balance)
        return balance

    def deduct(self, user_id: str, amount: int) -> int:
        balance = self.check_balance(user_id, amount)
        new_balance = balance - amount
        self.sb.table(PROFILES_TABLE).update({"credit_balance": new_balance}).eq("id", user_id).execute()
        logger.info(f"Deducted {amount} credits from {user_id} (balance {new_balance})")
        return new_balance

    def refund(self, user_id: str, amount: int) -> int:
        new_balance = self.get_balance(user_id) + amount
        self.sb.table(PROFILES_TABLE).update({"credit_balance": new_balance}).eq("id", user_id).execute()
        logger.info(f"Refunded {amount} credits to {user_id} (balance {new_balance})")
        return new_balance

    def record_transaction(
        self,
        user_id: str,
        type: Literal["usage", "refund"],
        amount: int,
        description: str,
        project_id: Optional[str] = None,
        balance_after: Optional[int] = None,
    ) -> None:
        """Usage rows carry a negative amount, refunds a positive one."""
        signed = -abs(amount) if type == "usage" else abs(amount)
        self.sb.table(TRANSACTIONS_TABLE).insert({
            "user_id": user_id,
            "amount": signed,
            "balance_after": balance_after,
            "reason": type,
            "job_id": project_id,
            "metadata": json.dumps({"type": type, "description": description}),
        }).execute()
