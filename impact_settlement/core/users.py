"""
User directory with the registration tier state machine.

Tiers only move up (minimal -> standard -> full). Each tier requires a set of
personal fields; a purchase that needs a higher tier than the user currently
has must carry the data for it.
"""
import uuid
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.exceptions import ConflictError, NotFoundError, ValidationError
from impact_settlement.database.models import RegistrationLevel, User

logger = structlog.get_logger(__name__)

STANDARD_FIELDS = ("email", "first_name", "last_name")
FULL_FIELDS = STANDARD_FIELDS + ("date_of_birth", "street", "city", "postal_code", "country")


@dataclass
class RegistrationData:
    """Personal data a customer submits with a purchase."""

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    terms_accepted: bool = False

    def __post_init__(self):
        if self.email:
            self.email = normalize_email(self.email)
        if isinstance(self.date_of_birth, str):
            try:
                self.date_of_birth = date.fromisoformat(self.date_of_birth)
            except ValueError:
                raise ValidationError("date_of_birth must be an ISO date (YYYY-MM-DD)")

    def missing_for(self, level: RegistrationLevel) -> List[str]:
        """Names of fields still required for ``level``."""
        if level == RegistrationLevel.MINIMAL:
            required: Tuple[str, ...] = ("email",)
        elif level == RegistrationLevel.STANDARD:
            required = STANDARD_FIELDS
        else:
            required = FULL_FIELDS

        missing = [name for name in required if not getattr(self, name)]
        if level != RegistrationLevel.MINIMAL and not self.terms_accepted:
            missing.append("terms_accepted")
        return missing


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _profile_fields() -> List[str]:
    return [f.name for f in fields(RegistrationData) if f.name not in ("email", "terms_accepted")]


class UserDirectory:
    """Creates, looks up and escalates users."""

    async def get_by_id(
        self, db: AsyncSession, user_id: uuid.UUID, for_update: bool = False
    ) -> User:
        """
        Raises:
            NotFoundError: If the user does not exist
        """
        user = await db.get(User, user_id, with_for_update=for_update)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", user_id=str(user_id))
        return user

    async def find_by_email(
        self, db: AsyncSession, email: str, for_update: bool = False
    ) -> Optional[User]:
        query = select(User).where(User.email == normalize_email(email))
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def create_minimal(self, db: AsyncSession, email: str) -> User:
        return await self._create(db, RegistrationData(email=email), RegistrationLevel.MINIMAL)

    async def create_standard(self, db: AsyncSession, data: RegistrationData) -> User:
        return await self._create(db, data, RegistrationLevel.STANDARD)

    async def create_full(self, db: AsyncSession, data: RegistrationData) -> User:
        return await self._create(db, data, RegistrationLevel.FULL)

    async def _create(
        self, db: AsyncSession, data: RegistrationData, level: RegistrationLevel
    ) -> User:
        """
        Insert a user at ``level``. Flushes, never commits.

        Raises:
            ValidationError: If fields required by the tier are missing
            ConflictError: If the email is already registered
        """
        missing = data.missing_for(level)
        if missing:
            raise ValidationError(
                f"Missing required fields for {level.value} registration",
                registration_level=level.value,
                missing_fields=missing,
            )

        user = User(email=data.email, registration_level=level.value)
        self._apply_profile(user, data)

        try:
            async with db.begin_nested():
                db.add(user)
        except IntegrityError:
            raise ConflictError("Email already registered", email=data.email)

        logger.info("user_created", user_id=str(user.id), registration_level=level.value)
        return user

    @staticmethod
    def _apply_profile(user: User, data: RegistrationData) -> None:
        for name in _profile_fields():
            value = getattr(data, name)
            if value:
                setattr(user, name, value)
        if data.terms_accepted and user.terms_accepted_at is None:
            user.terms_accepted_at = datetime.now(timezone.utc)

    def _escalate(
        self, user: User, required: RegistrationLevel, data: Optional[RegistrationData]
    ) -> None:
        if user.level.rank >= required.rank:
            return

        if data is None:
            raise ValidationError(
                f"Registration data required to upgrade to {required.value}",
                user_id=str(user.id),
                registration_level=required.value,
            )

        # Existing profile values count toward the requirement
        merged = RegistrationData(
            email=user.email,
            **{name: getattr(data, name) or getattr(user, name) for name in _profile_fields()},
            terms_accepted=data.terms_accepted or user.terms_accepted_at is not None,
        )
        missing = merged.missing_for(required)
        if missing:
            raise ValidationError(
                f"Missing required fields for {required.value} registration",
                user_id=str(user.id),
                registration_level=required.value,
                missing_fields=missing,
            )

        previous = user.registration_level
        self._apply_profile(user, merged)
        user.registration_level = required.value
        logger.info(
            "user_registration_escalated",
            user_id=str(user.id),
            from_level=previous,
            to_level=required.value,
        )

    async def resolve_for_purchase(
        self,
        db: AsyncSession,
        required_level: RegistrationLevel,
        user_id: Optional[uuid.UUID] = None,
        registration: Optional[RegistrationData] = None,
    ) -> User:
        """
        Find the purchasing user and make sure their tier covers the purchase.

        The user row is returned locked for update. Flushes, never commits.

        Raises:
            NotFoundError: If ``user_id`` is given and unknown
            ValidationError: If identifying or tier data is missing
        """
        if user_id is not None:
            user = await self.get_by_id(db, user_id, for_update=True)
            self._escalate(user, required_level, registration)
            await db.flush()
            return user

        if registration is None or not registration.email:
            raise ValidationError("Email is required to identify the customer")

        user = await self.find_by_email(db, registration.email, for_update=True)
        if user is None:
            try:
                return await self._create(db, registration, required_level)
            except ConflictError:
                # Lost a race with a concurrent registration of the same email
                user = await self.find_by_email(db, registration.email, for_update=True)
                if user is None:
                    raise

        self._escalate(user, required_level, registration)
        await db.flush()
        return user

    async def set_threshold_flag(self, db: AsyncSession, user_id: uuid.UUID, flag: bool) -> bool:
        """
        Set the certification flag. Returns True if it changed.

        The flag never goes back to false. Flushes, never commits.

        Raises:
            ConflictError: On an attempt to clear a set flag
        """
        user = await self.get_by_id(db, user_id, for_update=True)
        if user.corsair_connect_flag == flag:
            return False
        if not flag:
            raise ConflictError(
                "Threshold flag cannot be cleared once set", user_id=str(user_id)
            )
        user.corsair_connect_flag = True
        await db.flush()
        logger.info("user_threshold_flag_set", user_id=str(user_id))
        return True
