"""
Database-backed business configuration.

Values are edited by admins at runtime, so every settlement operation reads
them once into an immutable ``ConfigSnapshot`` and threads that snapshot
through all of its sub-steps.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.exceptions import ConfigError, NotFoundError, ValidationError
from impact_settlement.database.models import ConfigAuditLog, GlobalConfig

logger = structlog.get_logger(__name__)

CURRENT_CSR_PRICE = "CURRENT_CSR_PRICE"
CORSAIR_THRESHOLD = "CORSAIR_THRESHOLD"
PLATFORM_FEE_PERCENTAGE = "PLATFORM_FEE_PERCENTAGE"
MASTER_ID = "MASTER_ID"

CRITICAL_KEYS = frozenset({CURRENT_CSR_PRICE, PLATFORM_FEE_PERCENTAGE})

DEFAULTS: Dict[str, Tuple[str, str]] = {
    CURRENT_CSR_PRICE: ("0.11", "Price per kilogram of plastic removal in euros"),
    CORSAIR_THRESHOLD: ("10.00", "Cumulative spend in euros that certifies a user's assets"),
    PLATFORM_FEE_PERCENTAGE: ("0.10", "Platform share of split payments, as a fraction"),
    MASTER_ID: ("MASTER-001", "Network-wide attribution id stamped on every transaction"),
}


def _parse_decimal(key: str, value: str) -> Decimal:
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"{key} must be a number, got {value!r}")


def _positive(key: str, value: str) -> None:
    if _parse_decimal(key, value) <= 0:
        raise ValueError(f"{key} must be greater than zero")


def _fraction(key: str, value: str) -> None:
    parsed = _parse_decimal(key, value)
    if parsed < 0 or parsed > 1:
        raise ValueError(f"{key} must be between 0 and 1")


def _non_empty(key: str, value: str) -> None:
    if not value.strip():
        raise ValueError(f"{key} must not be empty")


_VALIDATORS: Dict[str, Callable[[str, str], None]] = {
    CURRENT_CSR_PRICE: _positive,
    CORSAIR_THRESHOLD: _positive,
    PLATFORM_FEE_PERCENTAGE: _fraction,
    MASTER_ID: _non_empty,
}


@dataclass(frozen=True)
class ConfigSnapshot:
    """Config values read once at the start of an operation."""

    csr_price: Decimal
    corsair_threshold: Decimal
    platform_fee_percentage: Decimal
    master_id: str


class ConfigStore:
    """Reads and writes ``global_config`` rows."""

    async def get(self, db: AsyncSession, key: str) -> str:
        """
        Get a raw config value.

        Raises:
            ConfigError: If the key is not configured
        """
        row = await db.get(GlobalConfig, key)
        if row is None:
            raise ConfigError(f"Configuration key '{key}' not found", key=key)
        return row.value

    async def set(
        self,
        db: AsyncSession,
        key: str,
        value: str,
        changed_by: str,
        description: Optional[str] = None,
    ) -> GlobalConfig:
        """
        Create or update a config value and append an audit record.

        Known keys are validated before anything is written. Commits.

        Raises:
            ValidationError: If the value is invalid for its key or changed_by is empty
        """
        if not changed_by:
            raise ValidationError("changed_by is required", key=key)

        validator = _VALIDATORS.get(key)
        if validator is not None:
            try:
                validator(key, value)
            except ValueError as e:
                raise ValidationError(str(e), key=key, value=value)

        try:
            row = await db.get(GlobalConfig, key, with_for_update=True)
            old_value = row.value if row is not None else None
            if row is None:
                row = GlobalConfig(key=key, value=value, description=description)
                db.add(row)
            else:
                row.value = value
                if description:
                    row.description = description

            db.add(
                ConfigAuditLog(
                    config_key=key,
                    old_value=old_value,
                    new_value=value,
                    changed_by=changed_by,
                )
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "config_updated",
            key=key,
            old_value=old_value,
            new_value=value,
            changed_by=changed_by,
        )
        return row

    async def get_all(self, db: AsyncSession) -> List[GlobalConfig]:
        result = await db.execute(select(GlobalConfig).order_by(GlobalConfig.key))
        return list(result.scalars().all())

    async def get_audit_log(
        self, db: AsyncSession, key: Optional[str] = None, limit: int = 100
    ) -> List[ConfigAuditLog]:
        query = select(ConfigAuditLog).order_by(ConfigAuditLog.changed_at.desc()).limit(limit)
        if key is not None:
            query = query.where(ConfigAuditLog.config_key == key)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def delete(self, db: AsyncSession, key: str) -> None:
        """
        Delete a config key. Critical keys cannot be deleted.

        Raises:
            ValidationError: If the key is critical
            NotFoundError: If the key does not exist
        """
        if key in CRITICAL_KEYS:
            raise ValidationError(f"Cannot delete {key}: critical configuration", key=key)

        row = await db.get(GlobalConfig, key)
        if row is None:
            raise NotFoundError(f"Configuration key '{key}' not found", key=key)

        await db.delete(row)
        await db.commit()
        logger.warning("config_deleted", key=key)

    async def ensure_defaults(self, db: AsyncSession, changed_by: str = "system") -> List[str]:
        """
        Insert any missing required key with its default value.

        Existing values are left untouched. Returns the keys inserted.
        """
        result = await db.execute(
            select(GlobalConfig.key).where(GlobalConfig.key.in_(list(DEFAULTS)))
        )
        existing = set(result.scalars().all())

        inserted = []
        for key, (value, description) in DEFAULTS.items():
            if key in existing:
                continue
            db.add(GlobalConfig(key=key, value=value, description=description))
            db.add(
                ConfigAuditLog(
                    config_key=key, old_value=None, new_value=value, changed_by=changed_by
                )
            )
            inserted.append(key)

        if inserted:
            await db.commit()
            logger.info("config_defaults_inserted", keys=inserted)
        return inserted

    # Typed accessors

    async def _get_decimal(self, db: AsyncSession, key: str) -> Decimal:
        value = await self.get(db, key)
        try:
            _VALIDATORS[key](key, value)
        except ValueError as e:
            raise ConfigError(f"Invalid {key} value: {value}", key=key, reason=str(e))
        return Decimal(value)

    async def get_csr_price(self, db: AsyncSession) -> Decimal:
        return await self._get_decimal(db, CURRENT_CSR_PRICE)

    async def get_corsair_threshold(self, db: AsyncSession) -> Decimal:
        return await self._get_decimal(db, CORSAIR_THRESHOLD)

    async def get_platform_fee_percentage(self, db: AsyncSession) -> Decimal:
        return await self._get_decimal(db, PLATFORM_FEE_PERCENTAGE)

    async def get_master_id(self, db: AsyncSession) -> str:
        value = await self.get(db, MASTER_ID)
        if not value.strip():
            raise ConfigError("MASTER_ID is empty", key=MASTER_ID)
        return value

    async def snapshot(self, db: AsyncSession) -> ConfigSnapshot:
        """
        Read every value a settlement needs in one query.

        Raises:
            ConfigError: If any required key is missing or invalid
        """
        result = await db.execute(
            select(GlobalConfig).where(GlobalConfig.key.in_(list(_VALIDATORS)))
        )
        values = {row.key: row.value for row in result.scalars().all()}

        missing = sorted(set(_VALIDATORS) - set(values))
        if missing:
            raise ConfigError("Required configuration missing", keys=missing)

        for key, validator in _VALIDATORS.items():
            try:
                validator(key, values[key])
            except ValueError as e:
                raise ConfigError(f"Invalid {key} value: {values[key]}", key=key, reason=str(e))

        return ConfigSnapshot(
            csr_price=Decimal(values[CURRENT_CSR_PRICE]),
            corsair_threshold=Decimal(values[CORSAIR_THRESHOLD]),
            platform_fee_percentage=Decimal(values[PLATFORM_FEE_PERCENTAGE]),
            master_id=values[MASTER_ID],
        )
