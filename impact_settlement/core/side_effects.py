"""
Side-effect dispatch and threshold crossing detection.

Notifications (emails, certificate generation) are external collaborators.
The engine collects what happened during a unit of work, commits, and only
then calls the dispatcher; a failing dispatcher is logged and counted but
never undoes the committed settlement.
"""
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import structlog

from impact_settlement.core.wallets import WalletTotals
from impact_settlement.database.models import Transaction, User, Wallet
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@runtime_checkable
class SideEffectDispatcher(Protocol):
    """
    Receiver of post-commit notifications.

    Both calls carry more than the bare ``(transaction, user)`` and
    ``(user, totals)`` pairs. ``certificate_eligible`` tells the receiver
    whether to attach a certificate link to the confirmation, and the
    threshold notice gets the settling ``transaction`` so the certificate can
    reference the purchase that crossed the threshold. Implementations must
    accept these extra arguments.
    """

    async def notify_transaction_confirmed(
        self, transaction: Transaction, user: User, certificate_eligible: bool
    ) -> None:
        ...

    async def notify_threshold_achieved(
        self, user: User, totals: WalletTotals, transaction: Transaction
    ) -> None:
        ...


class LoggingSideEffectDispatcher:
    """Default dispatcher: records notifications in the log only."""

    async def notify_transaction_confirmed(
        self, transaction: Transaction, user: User, certificate_eligible: bool
    ) -> None:
        logger.info(
            "notify_transaction_confirmed",
            transaction_id=str(transaction.id),
            user_id=str(user.id),
            calculated_impact=transaction.calculated_impact,
            certificate_eligible=certificate_eligible,
        )

    async def notify_threshold_achieved(
        self, user: User, totals: WalletTotals, transaction: Transaction
    ) -> None:
        logger.info(
            "notify_threshold_achieved",
            user_id=str(user.id),
            transaction_id=str(transaction.id),
            total_amount_spent=str(totals.total_amount_spent),
            total_accumulated=totals.total_accumulated,
        )


def crossed_threshold(previous_flag: bool, user_wallet: Wallet) -> bool:
    """
    True only for the operation that first certifies the user.

    ``previous_flag`` must be read before the wallet credit; comparing against
    a value read afterwards would never report a crossing.
    """
    return not previous_flag and user_wallet.certified_asset_status


@dataclass
class SettlementNotice:
    """Facts of one settlement, held until after commit."""

    transaction: Transaction
    user: User
    certificate_eligible: bool
    threshold_totals: Optional[WalletTotals] = None


async def dispatch_notices(dispatcher: SideEffectDispatcher, notice: SettlementNotice) -> None:
    """Fire-and-forget delivery; dispatcher errors are logged and swallowed."""
    try:
        await dispatcher.notify_transaction_confirmed(
            notice.transaction, notice.user, notice.certificate_eligible
        )
    except Exception as e:
        metrics.record_side_effect_failure("transaction_confirmed")
        logger.error(
            "side_effect_failed",
            notification="transaction_confirmed",
            transaction_id=str(notice.transaction.id),
            error=str(e),
            exc_info=True,
        )

    if notice.threshold_totals is None:
        return

    try:
        await dispatcher.notify_threshold_achieved(
            notice.user, notice.threshold_totals, notice.transaction
        )
    except Exception as e:
        metrics.record_side_effect_failure("threshold_achieved")
        logger.error(
            "side_effect_failed",
            notification="threshold_achieved",
            user_id=str(notice.user.id),
            error=str(e),
            exc_info=True,
        )
