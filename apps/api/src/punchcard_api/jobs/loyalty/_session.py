from __future__ import annotations

from typing import Awaitable, Callable, Iterable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.services.loyalty.queries import LoyaltyQueryService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def resolve_tenants(session: AsyncSession, tenant_ids: Iterable[str | UUID] | None) -> list[UUID]:
    """Explicit tenants from job kwargs, else every tenant with an active offer."""

    if tenant_ids:
        return [value if isinstance(value, UUID) else UUID(str(value)) for value in tenant_ids]
    return await LoyaltyQueryService(session).tenants_with_active_offers()
