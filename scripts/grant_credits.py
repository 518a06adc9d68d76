from __future__ import annotations

import argparse
import asyncio
import sys

from limitledger.core.logging import configure_logging
from limitledger.domain.credits import CreditPayer
from limitledger.persistence.db import SessionLocal
from limitledger.services.audit import record_event
from limitledger.services.credits import adjust_credit_balance
from limitledger.services.credits.ledger import to_credit_amount


def _build_parser() -> argparse.ArgumentParser:
    # Positive amounts grant credits, negative amounts claw them back.
    parser = argparse.ArgumentParser(description="Adjust a payer's credit balance")
    parser.add_argument("--payer-type", required=True, choices=["user", "workspace"])
    parser.add_argument("--payer-id", required=True, help="User or workspace identifier")
    parser.add_argument("--amount", required=True, help="Signed credit delta, e.g. 50 or -2.5")
    parser.add_argument("--reason", default=None, help="Recorded on the ledger entry")
    parser.add_argument("--reference-id", default=None, help="Optional external reference")
    parser.add_argument(
        "--allow-negative",
        action="store_true",
        help="Permit the balance to drop below zero",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    payer = CreditPayer(type=args.payer_type, id=args.payer_id)
    amount = to_credit_amount(args.amount)
    async with SessionLocal() as session:
        result = await adjust_credit_balance(
            session,
            payer=payer,
            delta=amount,
            entry_type="adjustment" if amount > 0 else "usage",
            reference_id=args.reference_id,
            source="cli",
            metadata={"reason": args.reason} if args.reason else None,
            created_by="grant_credits",
            allow_negative=args.allow_negative,
        )
        await record_event(
            session=session,
            actor_type="system",
            actor_id="grant_credits",
            event_type="credits.balance.adjusted",
            outcome="success",
            resource_type="credit_balance",
            resource_id=f"{payer.type}:{payer.id}",
            metadata={
                "entry_id": result.entry.id,
                "delta": str(result.entry.delta),
                "reason": args.reason,
            },
            best_effort=False,
        )

    print("credit balance adjusted:")
    print(f"  payer: {payer.type}:{payer.id}")
    print(f"  entry_id: {result.entry.id}")
    print(f"  available: {result.balance.available}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface ledger failures clearly
        print(f"grant_credits failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
