import asyncio
import sys
import os

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from database import async_session_maker
from models.token_account import TokenAccount
from services.token_ledger import reconcile_token_account


async def verify_ledger_async():
    print("🔍 Reconciling token accounts against the transaction ledger...")

    async with async_session_maker() as db:
        result = await db.execute(select(TokenAccount.user_id).order_by(TokenAccount.user_id.asc()))
        user_ids = list(result.scalars().all())

        if not user_ids:
            print("⚠️ No token accounts found.")
            return True

        failures = 0
        for user_id in user_ids:
            report = await reconcile_token_account(db, user_id)
            if report["consistent"]:
                print(
                    f"✅ user={user_id} balance={report['stored_balance']} "
                    f"transactions={report['transaction_count']}"
                )
            else:
                failures += 1
                print(
                    f"❌ user={user_id} stored={report['stored_balance']} "
                    f"ledger={report['ledger_balance']} broken_links={report['broken_links']}"
                )

    print(f"\n📊 Checked {len(user_ids)} accounts, {failures} inconsistent.")
    return failures == 0


if __name__ == "__main__":
    ok = asyncio.run(verify_ledger_async())
    sys.exit(0 if ok else 1)
