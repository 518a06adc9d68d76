from __future__ import annotations

# Re-export credit services for centralized imports.

from limitledger.services.credits.ledger import (
    adjust_credit_balance,
    calculate_usd_amount_for_credits,
    get_credit_balance,
    list_credit_balances,
    list_ledger_entries,
    update_auto_top_up_settings,
)
from limitledger.services.credits.purchases import (
    complete_credit_purchase,
    create_credit_purchase,
    update_credit_purchase_status,
)
from limitledger.services.credits.auto_top_up import maybe_trigger_auto_top_up
from limitledger.services.credits.charges import charge_credits

__all__ = [
    "adjust_credit_balance",
    "calculate_usd_amount_for_credits",
    "get_credit_balance",
    "list_credit_balances",
    "list_ledger_entries",
    "update_auto_top_up_settings",
    "complete_credit_purchase",
    "create_credit_purchase",
    "update_credit_purchase_status",
    "maybe_trigger_auto_top_up",
    "charge_credits",
]
