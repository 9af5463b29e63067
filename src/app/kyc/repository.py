"""Investor store -- wallet and KYC fields on tenant users.

Thin repository over the tenant ``users`` table exposing the
InvestorProfile view the escrow lifecycle depends on.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.escrow.schemas import InvestorProfile, KycStatus
from src.app.models.tenant import User

logger = structlog.get_logger(__name__)


def _user_to_profile(user: User) -> InvestorProfile:
    return InvestorProfile(
        id=str(user.id),
        email=user.email,
        wallet_address=user.wallet_address,
        kyc_status=KycStatus(user.kyc_status or KycStatus.NOT_STARTED.value),
        kyc_reference=user.kyc_reference,
    )


class InvestorRepository:
    """Reads and updates investor wallet/KYC state.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, tenant_id: str, user_id: str) -> User | None:
        try:
            user_uuid = uuid.UUID(str(user_id))
        except ValueError:
            return None
        stmt = select(User).where(
            User.tenant_id == uuid.UUID(tenant_id),
            User.id == user_uuid,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_profile(self, tenant_id: str, user_id: str) -> InvestorProfile | None:
        async for session in self._session_factory():
            user = await self._load(session, tenant_id, user_id)
            return _user_to_profile(user) if user else None

    async def get_by_kyc_reference(self, tenant_id: str, reference: str) -> InvestorProfile | None:
        async for session in self._session_factory():
            stmt = select(User).where(
                User.tenant_id == uuid.UUID(tenant_id),
                User.kyc_reference == reference,
            )
            result = await session.execute(stmt)
            user = result.scalars().first()
            return _user_to_profile(user) if user else None

    async def set_kyc_status(
        self,
        tenant_id: str,
        user_id: str,
        status: KycStatus,
        reference: str | None = None,
    ) -> InvestorProfile:
        """Store the investor's KYC status (and provider reference, if given).

        Raises:
            ValueError: If the user does not exist in this tenant.
        """
        async for session in self._session_factory():
            user = await self._load(session, tenant_id, user_id)
            if user is None:
                raise ValueError(f"User not found: tenant={tenant_id}, id={user_id}")
            user.kyc_status = status.value
            if reference is not None:
                user.kyc_reference = reference
            user.kyc_updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(user)
            logger.info("kyc.status_stored", tenant_id=tenant_id, user_id=user_id, status=status.value)
            return _user_to_profile(user)

    async def set_wallet(self, tenant_id: str, user_id: str, wallet_address: str) -> InvestorProfile:
        """Bind the wallet that funds (and receives refunds from) escrows.

        Raises:
            ValueError: If the user does not exist in this tenant.
        """
        async for session in self._session_factory():
            user = await self._load(session, tenant_id, user_id)
            if user is None:
                raise ValueError(f"User not found: tenant={tenant_id}, id={user_id}")
            user.wallet_address = wallet_address
            await session.commit()
            await session.refresh(user)
            return _user_to_profile(user)
