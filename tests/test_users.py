"""
Tests for the user directory and registration tier escalation.
"""
import uuid
from datetime import date
from typing import Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.exceptions import ConflictError, NotFoundError, ValidationError
from impact_settlement.core.users import RegistrationData, UserDirectory
from impact_settlement.database.models import RegistrationLevel


class TestRegistrationData:

    @pytest.mark.unit
    def test_email_is_normalized(self) -> None:
        data = RegistrationData(email="  Ada@Example.COM ")
        assert data.email == "ada@example.com"

    @pytest.mark.unit
    def test_iso_birth_date_is_parsed(self) -> None:
        data = RegistrationData(email="a@x.com", date_of_birth="1990-05-17")
        assert data.date_of_birth == date(1990, 5, 17)

    @pytest.mark.unit
    def test_bad_birth_date(self) -> None:
        with pytest.raises(ValidationError, match="date_of_birth"):
            RegistrationData(email="a@x.com", date_of_birth="17/05/1990")

    @pytest.mark.unit
    def test_missing_fields_per_level(self, make_registration: Callable) -> None:
        minimal = make_registration(level="minimal")
        assert minimal.missing_for(RegistrationLevel.MINIMAL) == []
        assert minimal.missing_for(RegistrationLevel.STANDARD) == [
            "first_name", "last_name", "terms_accepted"
        ]
        assert make_registration(level="standard").missing_for(RegistrationLevel.FULL) == [
            "date_of_birth", "street", "city", "postal_code", "country"
        ]


class TestUserDirectory:
    """Creation, lookup and tier escalation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_full(self, test_db: AsyncSession, make_registration: Callable) -> None:
        directory = UserDirectory()
        user = await directory.create_full(test_db, make_registration())
        await test_db.commit()

        assert user.level == RegistrationLevel.FULL
        assert user.terms_accepted_at is not None
        found = await directory.find_by_email(test_db, "A@X.com")
        assert found is not None and found.id == user.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_standard_requires_names(
        self, test_db: AsyncSession, make_registration: Callable
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await UserDirectory().create_standard(test_db, make_registration(level="minimal"))
        assert "first_name" in exc_info.value.details["missing_fields"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_email(self, test_db: AsyncSession) -> None:
        directory = UserDirectory()
        await directory.create_minimal(test_db, "dup@example.com")
        await test_db.commit()

        with pytest.raises(ConflictError):
            await directory.create_minimal(test_db, "DUP@example.com")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_user(self, test_db: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await UserDirectory().get_by_id(test_db, uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_creates_at_required_level(
        self, test_db: AsyncSession, make_registration: Callable
    ) -> None:
        user = await UserDirectory().resolve_for_purchase(
            test_db, RegistrationLevel.STANDARD, registration=make_registration(level="standard")
        )
        assert user.level == RegistrationLevel.STANDARD

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_requires_email(self, test_db: AsyncSession) -> None:
        with pytest.raises(ValidationError, match="Email is required"):
            await UserDirectory().resolve_for_purchase(test_db, RegistrationLevel.MINIMAL)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_escalation_merges_existing_profile(
        self, test_db: AsyncSession, make_registration: Callable
    ) -> None:
        directory = UserDirectory()
        user = await directory.create_standard(test_db, make_registration(level="standard"))
        await test_db.commit()

        # Only the address arrives with the next purchase; names come from the profile
        escalated = await directory.resolve_for_purchase(
            test_db,
            RegistrationLevel.FULL,
            user_id=user.id,
            registration=RegistrationData(
                date_of_birth=date(1990, 5, 17),
                street="1 Harbour Road",
                city="Genoa",
                postal_code="16121",
                country="IT",
            ),
        )

        assert escalated.level == RegistrationLevel.FULL
        assert escalated.first_name == "Ada"
        assert escalated.city == "Genoa"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_escalation_without_data_fails(self, test_db: AsyncSession) -> None:
        directory = UserDirectory()
        user = await directory.create_minimal(test_db, "min@example.com")
        await test_db.commit()

        with pytest.raises(ValidationError) as exc_info:
            await directory.resolve_for_purchase(test_db, RegistrationLevel.FULL, user_id=user.id)
        assert exc_info.value.details["registration_level"] == "full"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_escalation_with_partial_data_lists_missing(
        self, test_db: AsyncSession
    ) -> None:
        directory = UserDirectory()
        user = await directory.create_minimal(test_db, "min@example.com")
        await test_db.commit()

        with pytest.raises(ValidationError) as exc_info:
            await directory.resolve_for_purchase(
                test_db,
                RegistrationLevel.STANDARD,
                user_id=user.id,
                registration=RegistrationData(first_name="Ada"),
            )
        assert exc_info.value.details["missing_fields"] == ["last_name", "terms_accepted"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_level_never_goes_down(
        self, test_db: AsyncSession, make_registration: Callable
    ) -> None:
        directory = UserDirectory()
        user = await directory.create_full(test_db, make_registration())
        await test_db.commit()

        resolved = await directory.resolve_for_purchase(
            test_db, RegistrationLevel.MINIMAL, registration=RegistrationData(email="a@x.com")
        )

        assert resolved.id == user.id
        assert resolved.level == RegistrationLevel.FULL

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_threshold_flag_is_monotonic(self, test_db: AsyncSession) -> None:
        directory = UserDirectory()
        user = await directory.create_minimal(test_db, "flag@example.com")
        await test_db.commit()

        assert await directory.set_threshold_flag(test_db, user.id, True) is True
        assert await directory.set_threshold_flag(test_db, user.id, True) is False

        with pytest.raises(ConflictError, match="cannot be cleared"):
            await directory.set_threshold_flag(test_db, user.id, False)
