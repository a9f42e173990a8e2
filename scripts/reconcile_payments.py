"""List charges that never became a subscription, and optionally refund them."""
import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.exceptions import AppError  # noqa: E402
from app.database import SessionLocal  # noqa: E402
from app.integrations.toss import BillingGatewayClient  # noqa: E402
from app.services.reconciliation import DEFAULT_REFUND_REASON, ReconciliationService  # noqa: E402
from app.services.subscription_repository import SubscriptionRepository  # noqa: E402


async def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--refund", metavar="PAYMENT_ID", help="refund one reconciliation marker")
    parser.add_argument("--reason", default=DEFAULT_REFUND_REASON)
    args = parser.parse_args()

    db = SessionLocal()
    try:
        service = ReconciliationService(SubscriptionRepository(db), BillingGatewayClient())
        if args.refund:
            try:
                row = await service.refund(args.refund, args.reason)
            except AppError as exc:
                print(f"Refund failed: [{exc.code}] {exc.message}")
                return 1
            print(f"Refunded {row.payment_key} ({row.amount})")
            return 0

        markers = service.list_markers()
        print(f"=== RECONCILIATION MARKERS ({len(markers)}) ===")
        for marker in markers:
            print(
                f"  {marker['id']}  account={marker['account_id']}  payment_key={marker['payment_key']}"
                f"  order_id={marker['order_id']}  amount={marker['amount']}  approved_at={marker['approved_at']}"
            )
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
