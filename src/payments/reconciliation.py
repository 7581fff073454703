"""
Commit Reconciliation

Retries ledger commits for paid orders flagged commit_failed. Such orders
still hold their reservation, so once the ledger is consistent again the
commit applies exactly as the webhook would have.
"""

from dataclasses import dataclass

import structlog

from src.inventory.commit import CommitStatus, InventoryCommitter
from src.storage.base import OrderStore

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationReport:
    examined: int = 0
    committed: int = 0
    still_failing: int = 0

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "committed": self.committed,
            "still_failing": self.still_failing,
        }


class CommitReconciler:
    def __init__(self, orders: OrderStore, committer: InventoryCommitter, batch_size: int = 200):
        self.orders = orders
        self.committer = committer
        self.batch_size = batch_size

    async def run_once(self) -> ReconciliationReport:
        report = ReconciliationReport()
        for order in await self.orders.list_commit_failed_orders(self.batch_size):
            report.examined += 1
            result = await self.committer.commit(order.order_id, order.payment_reference)
            if result.status in (CommitStatus.APPLIED, CommitStatus.NOOP):
                report.committed += 1
                logger.info("commit_reconciled", order_id=order.order_id, order_number=order.order_number)
            else:
                report.still_failing += 1
        if report.examined:
            logger.info("commit_reconciliation_completed", **report.as_dict())
        return report
