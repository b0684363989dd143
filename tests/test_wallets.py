"""
Tests for the wallet ledger.

Every test checks the balance identity
current_balance == total_accumulated - total_redeemed after each mutation.
"""
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from impact_settlement.core.users import UserDirectory
from impact_settlement.core.wallets import WalletLedger, WalletTotals
from impact_settlement.database.models import OwnerType, Wallet

THRESHOLD = Decimal("10.00")


def assert_balanced(wallet: Wallet) -> None:
    assert wallet.current_balance == wallet.total_accumulated - wallet.total_redeemed
    assert wallet.current_balance >= 0


async def _user_id(db: AsyncSession, email: str = "wallet@example.com"):
    user = await UserDirectory().create_minimal(db, email)
    await db.commit()
    return user.id


class TestWalletCredit:
    """Crediting settled purchases."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_credit_creates_wallet(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)

        wallet = await ledger.credit(
            test_db, user_id, OwnerType.USER, 22727, Decimal("2.50"), THRESHOLD
        )
        await test_db.commit()

        assert wallet.user_id == user_id
        assert wallet.merchant_id is None
        assert wallet.owner_type == OwnerType.USER
        assert wallet.total_accumulated == 22727
        assert wallet.total_amount_spent == Decimal("2.50")
        assert wallet.certified_asset_status is False
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credits_accumulate_and_certify(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)

        await ledger.credit(test_db, user_id, OwnerType.USER, 45455, Decimal("5.00"), THRESHOLD)
        wallet = await ledger.credit(
            test_db, user_id, OwnerType.USER, 45455, Decimal("5.00"), THRESHOLD
        )
        await test_db.commit()

        assert wallet.total_accumulated == 90910
        assert wallet.total_amount_spent == Decimal("10.00")
        assert wallet.certified_asset_status is True
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_certification_survives_higher_threshold(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)

        first = await ledger.credit(
            test_db, user_id, OwnerType.USER, 36364, Decimal("2.00"), Decimal("1.00")
        )
        assert first.certified_asset_status is True

        wallet = await ledger.credit(
            test_db, user_id, OwnerType.USER, 9091, Decimal("1.00"), THRESHOLD
        )
        await test_db.commit()

        assert wallet.total_amount_spent == Decimal("3.00")
        assert wallet.certified_asset_status is True
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_merchant_wallet(self, test_db: AsyncSession, seed) -> None:
        merchant_id = seed.merchant.id

        wallet = await WalletLedger().credit(
            test_db, merchant_id, OwnerType.MERCHANT, 1000, Decimal("0.11"), THRESHOLD
        )
        await test_db.commit()

        assert wallet.merchant_id == merchant_id
        assert wallet.user_id is None
        assert wallet.owner_type == OwnerType.MERCHANT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_credit_rejected(self, test_db: AsyncSession) -> None:
        user_id = await _user_id(test_db)
        with pytest.raises(InvalidAmountError):
            await WalletLedger().credit(
                test_db, user_id, OwnerType.USER, -1, Decimal("0"), THRESHOLD
            )


class TestWalletRedeem:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_reduces_balance(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)
        await ledger.credit(test_db, user_id, OwnerType.USER, 1000, Decimal("1"), THRESHOLD)
        await test_db.commit()

        wallet = await ledger.redeem(test_db, user_id, OwnerType.USER, 400)

        assert wallet.total_redeemed == 400
        assert wallet.current_balance == 600
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_more_than_balance(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)
        await ledger.credit(test_db, user_id, OwnerType.USER, 100, Decimal("1"), THRESHOLD)
        await test_db.commit()

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.redeem(test_db, user_id, OwnerType.USER, 101)
        assert exc_info.value.details["available"] == 100

        wallet = await ledger.get_wallet(test_db, user_id, OwnerType.USER)
        assert wallet.total_redeemed == 0
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("grams", [0, -5])
    async def test_redeem_requires_positive_amount(self, test_db: AsyncSession, grams: int) -> None:
        user_id = await _user_id(test_db)
        with pytest.raises(InvalidAmountError):
            await WalletLedger().redeem(test_db, user_id, OwnerType.USER, grams)


class TestWalletAdjust:
    """Admin corrections."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adjustment_is_recorded(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)

        wallet, adjustment = await ledger.adjust(
            test_db, user_id, 500, "  Missing bottle scan ", adjusted_by="admin@example.com"
        )

        assert wallet.total_accumulated == 500
        assert_balanced(wallet)
        assert adjustment.reason == "Missing bottle scan"
        history = await ledger.get_adjustment_history(test_db, user_id)
        assert [entry.amount_grams for entry in history] == [500]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_result_is_rejected(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)
        await ledger.credit(test_db, user_id, OwnerType.USER, 30, Decimal("0.01"), THRESHOLD)
        await test_db.commit()

        with pytest.raises(ValidationError, match="negative balance"):
            await ledger.adjust(test_db, user_id, -50, "Clawback", adjusted_by="admin")

        wallet = await ledger.get_wallet(test_db, user_id, OwnerType.USER)
        assert wallet.total_accumulated == 30
        assert wallet.current_balance == 30
        assert await ledger.get_adjustment_history(test_db, user_id) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_adjustment_within_balance(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)
        await ledger.credit(test_db, user_id, OwnerType.USER, 30, Decimal("0.01"), THRESHOLD)
        await test_db.commit()

        wallet, _ = await ledger.adjust(test_db, user_id, -30, "Duplicate scan", adjusted_by="admin")

        assert wallet.current_balance == 0
        assert_balanced(wallet)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "delta,reason,adjusted_by",
        [(0, "noop", "admin"), (10, "   ", "admin"), (10, "reason", "")],
    )
    async def test_invalid_adjustments(
        self, test_db: AsyncSession, delta: int, reason: str, adjusted_by: str
    ) -> None:
        user_id = await _user_id(test_db)
        with pytest.raises(ValidationError):
            await WalletLedger().adjust(test_db, user_id, delta, reason, adjusted_by)


class TestWalletQueries:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_wallet(self, test_db: AsyncSession) -> None:
        user_id = await _user_id(test_db)
        with pytest.raises(NotFoundError):
            await WalletLedger().get_wallet(test_db, user_id, OwnerType.USER)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_totals_snapshot_is_detached(self, test_db: AsyncSession) -> None:
        ledger = WalletLedger()
        user_id = await _user_id(test_db)
        wallet = await ledger.credit(test_db, user_id, OwnerType.USER, 10, Decimal("1"), THRESHOLD)
        totals = WalletTotals.from_wallet(wallet)

        await ledger.credit(test_db, user_id, OwnerType.USER, 5, Decimal("1"), THRESHOLD)

        assert totals.total_accumulated == 10
        assert wallet.total_accumulated == 15
