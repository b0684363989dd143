"""
Tests for the runtime configuration store and SKU registry.
"""
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.config_store import (
    CORSAIR_THRESHOLD,
    CURRENT_CSR_PRICE,
    MASTER_ID,
    PLATFORM_FEE_PERCENTAGE,
    ConfigStore,
)
from impact_settlement.core.exceptions import (
    ConfigError,
    ConflictError,
    InactiveSKUError,
    NotFoundError,
    ValidationError,
)
from impact_settlement.core.sku_registry import SKURegistry, effective_threshold
from impact_settlement.database.models import GlobalConfig


class TestConfigStore:
    """Global config reads, writes and audit trail."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ensure_defaults_inserts_once(self, test_db: AsyncSession) -> None:
        store = ConfigStore()

        inserted = await store.ensure_defaults(test_db)
        assert set(inserted) == {CURRENT_CSR_PRICE, CORSAIR_THRESHOLD, PLATFORM_FEE_PERCENTAGE, MASTER_ID}

        assert await store.ensure_defaults(test_db) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_snapshot_reads_defaults(self, test_db: AsyncSession) -> None:
        store = ConfigStore()
        await store.ensure_defaults(test_db)

        snapshot = await store.snapshot(test_db)

        assert snapshot.csr_price == Decimal("0.11")
        assert snapshot.corsair_threshold == Decimal("10.00")
        assert snapshot.platform_fee_percentage == Decimal("0.10")
        assert snapshot.master_id == "MASTER-001"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_snapshot_without_config_fails(self, test_db: AsyncSession) -> None:
        with pytest.raises(ConfigError) as exc_info:
            await ConfigStore().snapshot(test_db)
        assert CURRENT_CSR_PRICE in exc_info.value.details["keys"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_snapshot_rejects_invalid_stored_price(self, test_db: AsyncSession) -> None:
        store = ConfigStore()
        await store.ensure_defaults(test_db)
        row = await test_db.get(GlobalConfig, CURRENT_CSR_PRICE)
        row.value = "0"
        await test_db.commit()

        with pytest.raises(ConfigError, match=CURRENT_CSR_PRICE):
            await store.snapshot(test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_writes_audit_entry(self, test_db: AsyncSession) -> None:
        store = ConfigStore()
        await store.ensure_defaults(test_db)

        await store.set(test_db, CURRENT_CSR_PRICE, "0.12", changed_by="admin@example.com")

        assert await store.get_csr_price(test_db) == Decimal("0.12")
        audit = await store.get_audit_log(test_db, key=CURRENT_CSR_PRICE)
        changes = [(entry.old_value, entry.new_value, entry.changed_by) for entry in audit]
        assert ("0.11", "0.12", "admin@example.com") in changes
        assert (None, "0.11", "system") in changes

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key,value",
        [
            (CURRENT_CSR_PRICE, "0"),
            (CURRENT_CSR_PRICE, "abc"),
            (CORSAIR_THRESHOLD, "-5"),
            (PLATFORM_FEE_PERCENTAGE, "1.5"),
            (MASTER_ID, "   "),
        ],
    )
    async def test_set_rejects_invalid_values(
        self, test_db: AsyncSession, key: str, value: str
    ) -> None:
        with pytest.raises(ValidationError):
            await ConfigStore().set(test_db, key, value, changed_by="admin")

        assert await test_db.get(GlobalConfig, key) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_requires_actor(self, test_db: AsyncSession) -> None:
        with pytest.raises(ValidationError, match="changed_by"):
            await ConfigStore().set(test_db, "FEATURE_X", "on", changed_by="")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_keys_are_free_form(self, test_db: AsyncSession) -> None:
        store = ConfigStore()
        await store.set(test_db, "SUPPORT_EMAIL", "help@example.com", changed_by="admin",
                        description="Support inbox")

        assert await store.get(test_db, "SUPPORT_EMAIL") == "help@example.com"
        await store.delete(test_db, "SUPPORT_EMAIL")
        with pytest.raises(ConfigError):
            await store.get(test_db, "SUPPORT_EMAIL")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", [CURRENT_CSR_PRICE, PLATFORM_FEE_PERCENTAGE])
    async def test_critical_keys_cannot_be_deleted(self, test_db: AsyncSession, key: str) -> None:
        store = ConfigStore()
        await store.ensure_defaults(test_db)

        with pytest.raises(ValidationError, match="critical"):
            await store.delete(test_db, key)

        assert await store.get(test_db, key)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_missing_key(self, test_db: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await ConfigStore().delete(test_db, "NOPE")


class TestSKURegistry:
    """SKU lookup and admin management."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_active_sku(self, test_db: AsyncSession, seed) -> None:
        sku = await SKURegistry().resolve_purchasable(test_db, "CLAIM-01")
        assert sku.price == Decimal("5.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_sku_is_not_purchasable(self, test_db: AsyncSession, seed) -> None:
        with pytest.raises(InactiveSKUError) as exc_info:
            await SKURegistry().resolve_purchasable(test_db, "OLD-01")
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_sku(self, test_db: AsyncSession, seed) -> None:
        with pytest.raises(NotFoundError):
            await SKURegistry().resolve_purchasable(test_db, "MISSING")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_and_deactivate(self, test_db: AsyncSession) -> None:
        registry = SKURegistry()
        sku = await registry.create_sku(
            test_db, "NEW-01", "New bottle", "CLAIM", Decimal("3.00"), Decimal("1.5")
        )
        sku_id = sku.id

        await registry.deactivate(test_db, sku_id)

        with pytest.raises(InactiveSKUError):
            await registry.resolve_purchasable(test_db, "NEW-01")
        active = await registry.list_skus(test_db, active_only=True)
        assert all(s.code != "NEW-01" for s in active)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_code_conflicts(self, test_db: AsyncSession, seed) -> None:
        with pytest.raises(ConflictError):
            await SKURegistry().create_sku(test_db, "CLAIM-01", "Dup", "CLAIM", Decimal("1"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mode,price,multiplier",
        [("BARTER", "1", "1"), ("CLAIM", "-1", "1"), ("CLAIM", "1", "0")],
    )
    async def test_create_validates(
        self, test_db: AsyncSession, mode: str, price: str, multiplier: str
    ) -> None:
        with pytest.raises(ValidationError):
            await SKURegistry().create_sku(
                test_db, "BAD-01", "Bad", mode, Decimal(price), Decimal(multiplier)
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_effective_threshold_prefers_sku_override(
        self, test_db: AsyncSession, seed
    ) -> None:
        assert effective_threshold(seed.skus["ALLOC-LOW"], Decimal("10")) == Decimal("1.00")
        assert effective_threshold(seed.skus["ALLOC-01"], Decimal("10")) == Decimal("10")
