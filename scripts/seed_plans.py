from __future__ import annotations

import argparse
import asyncio
import sys

from limitledger.core.logging import configure_logging
from limitledger.persistence.db import SessionLocal
from limitledger.services.audit import record_event
from limitledger.services.limits.plans import seed_plan_catalogue


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed the built-in plan catalogue")
    parser.add_argument(
        "--no-overwrite",
        action="store_true",
        help="Only insert missing plans; keep edited names and limits",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        plan_ids = await seed_plan_catalogue(session, overwrite=not args.no_overwrite)
        await record_event(
            session=session,
            actor_type="system",
            actor_id="seed_plans",
            event_type="limits.plans.seeded",
            outcome="success",
            resource_type="plan",
            resource_id=None,
            metadata={"plan_ids": plan_ids, "overwrite": not args.no_overwrite},
            best_effort=False,
        )

    print(f"seeded plans: {', '.join(plan_ids)}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report seeding failures to the operator
        print(f"seed_plans failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
