#!/usr/bin/env python3
"""
Script to repair refunds that are COMPLETED locally but were never proven
successful at the gateway.

For each COMPLETED refund the audit trail is searched for a SUCCESS refund
log. Refunds without one (or whose only "success" is an HTML error page) are
replayed once against the gateway and the result is appended to the audit
trail. Running the script again skips everything it already repaired.

Usage:
    # Check and repair all bKash and Nagad refunds
    python scripts/db/repair_stuck_refunds.py

    # Only Nagad, without calling the gateway
    python scripts/db/repair_stuck_refunds.py --gateway nagad --dry-run

    # A single refund
    python scripts/db/repair_stuck_refunds.py --gateway bkash --refund-id 42
"""

import argparse
import asyncio
import os
import sys
from typing import List, Optional

# Add the project root to the Python path
sys.path.append(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
)

from src.api.payments.services.reconciliation_service import (
    ReconciliationService,
    RepairSummary,
)
from src.config.constants import Gateway, RepairOutcome
from src.database.connection import engine

GATEWAY_CHOICES = {
    "bkash": [Gateway.BKASH],
    "nagad": [Gateway.NAGAD],
    "all": [Gateway.BKASH, Gateway.NAGAD],
}

OUTCOME_ICONS = {
    RepairOutcome.REPAIRED: "✅",
    RepairOutcome.SKIPPED: "✔️ ",
    RepairOutcome.WOULD_REPAIR: "🔎",
    RepairOutcome.MANUAL_INTERVENTION: "⚠️ ",
    RepairOutcome.FAILED: "❌",
}


def print_summary(summary: RepairSummary) -> None:
    for outcome in summary.outcomes:
        icon = OUTCOME_ICONS.get(outcome.outcome, "  ")
        print(
            f"    {icon} Refund #{outcome.refund_id} (transaction #{outcome.transaction_id}, "
            f"{outcome.correlation_id}): {outcome.outcome.value} - {outcome.detail}"
        )

    print()
    print(f"  Checked:                  {summary.checked}")
    print(f"  Repaired:                 {summary.repaired}")
    print(f"  Already proven (skipped): {summary.skipped}")
    if summary.dry_run:
        print(f"  Would repair:             {summary.would_repair}")
    print(f"  Manual intervention:      {summary.manual_intervention_needed}")
    print(f"  Failed (retry next run):  {summary.failed}")


async def main(
    gateways: List[Gateway],
    refund_id: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    """
    Run the reconciliation for each selected gateway.

    Returns:
        Process exit code: 1 when any refund needs manual intervention or failed
    """
    print("=" * 80)
    print("REPAIR STUCK REFUNDS SCRIPT" + (" (DRY RUN)" if dry_run else ""))
    print("=" * 80)
    print()

    service = ReconciliationService()
    needs_attention = 0

    try:
        for gateway in gateways:
            print(f"--> Reconciling {gateway.value} refunds...")
            summary = await service.repair_refunds(gateway, refund_id=refund_id, dry_run=dry_run)
            if not summary.checked:
                print("    ✅ No completed refunds found.")
            else:
                print_summary(summary)
            needs_attention += summary.manual_intervention_needed + summary.failed
            print("-" * 40)

    except Exception as e:
        print(f"❌ An unexpected error occurred during the script execution: {e}")
        import traceback

        traceback.print_exc()
        return 1

    finally:
        # Properly dispose of the engine to close all connections
        await engine.dispose()

    print()
    print("=" * 80)
    print("REFUND REPAIR COMPLETE")
    print("=" * 80)
    return 1 if needs_attention else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Repair refunds that were never confirmed by the payment gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check both gateways
  python scripts/db/repair_stuck_refunds.py

  # Report what would be replayed for Nagad
  python scripts/db/repair_stuck_refunds.py --gateway nagad --dry-run

  # Repair one bKash refund
  python scripts/db/repair_stuck_refunds.py --gateway bkash --refund-id 42
        """,
    )

    parser.add_argument(
        "--gateway",
        choices=sorted(GATEWAY_CHOICES),
        default="all",
        help="Gateway to reconcile (default: all).",
    )
    parser.add_argument(
        "--refund-id",
        type=int,
        help="A specific refund ID to check, ignoring all others.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be repaired without calling the gateway.",
    )

    args = parser.parse_args()

    try:
        exit_code = asyncio.run(
            main(
                GATEWAY_CHOICES[args.gateway],
                refund_id=args.refund_id,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        print("\n\n⚠️  Refund repair interrupted by user")
        sys.exit(1)
    sys.exit(exit_code)
