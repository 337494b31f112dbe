"""
Identity store backed by the async database.

All readers get detached ``IdentitySnapshot`` copies; every mutation is a
single UPDATE/DELETE statement so it is atomic per record.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin.core.exceptions import DuplicateIdentityError, NotFoundError
from checkin.models.identity import (
    Cookie,
    Identity,
    IdentitySnapshot,
    IdentityStatus,
    cookies_to_json,
)

logger = structlog.get_logger()


class IdentityStore:
    """Durable identity records."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a managed async session."""
        session: AsyncSession = self._session_factory()
        try:
            yield session
        finally:
            await session.close()

    async def create(
        self,
        external_user_id: str,
        display_name: str,
        cookies: Optional[Iterable[Cookie]],
        status: IdentityStatus = IdentityStatus.LOGGED_IN,
    ) -> IdentitySnapshot:
        """Insert a new identity; fails if the external user id is taken."""
        cookie_list = list(cookies) if cookies is not None else None
        async with self.session() as session:
            existing = await session.execute(
                sa.select(Identity.id).where(Identity.external_user_id == external_user_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateIdentityError(
                    f"Identity with user id {external_user_id} already exists"
                )

            identity = Identity(
                external_user_id=external_user_id,
                display_name=display_name,
                status=status.value,
                cookies=cookies_to_json(cookie_list),
            )
            session.add(identity)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateIdentityError(
                    f"Identity with user id {external_user_id} already exists"
                ) from exc
            await session.refresh(identity)

            logger.info(
                "Identity created",
                identity_id=identity.id,
                external_user_id=external_user_id,
                cookie_count=len(cookie_list or []),
            )
            return identity.to_snapshot()

    async def list_all(self) -> List[IdentitySnapshot]:
        async with self.session() as session:
            result = await session.execute(
                sa.select(Identity).order_by(Identity.created_at.desc(), Identity.id.desc())
            )
            return [row.to_snapshot() for row in result.scalars().all()]

    async def list_with_cookies(self) -> List[IdentitySnapshot]:
        """Identities eligible for dispatch and verification."""
        async with self.session() as session:
            result = await session.execute(
                sa.select(Identity)
                .where(Identity.cookies.is_not(None))
                .order_by(Identity.created_at.desc(), Identity.id.desc())
            )
            snapshots = [row.to_snapshot() for row in result.scalars().all()]
        return [snapshot for snapshot in snapshots if snapshot.has_cookies]

    async def get_by_id(self, identity_id: int) -> IdentitySnapshot:
        async with self.session() as session:
            identity = await session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity {identity_id} not found")
            return identity.to_snapshot()

    async def get_by_external_user_id(self, external_user_id: str) -> Optional[IdentitySnapshot]:
        async with self.session() as session:
            result = await session.execute(
                sa.select(Identity).where(Identity.external_user_id == external_user_id)
            )
            identity = result.scalar_one_or_none()
            return identity.to_snapshot() if identity else None

    async def get_by_display_name(self, display_name: str) -> Optional[IdentitySnapshot]:
        async with self.session() as session:
            result = await session.execute(
                sa.select(Identity).where(Identity.display_name == display_name).limit(1)
            )
            identity = result.scalar_one_or_none()
            return identity.to_snapshot() if identity else None

    async def update_status(self, identity_id: int, status: IdentityStatus) -> None:
        await self._update(identity_id, status=status.value)
        logger.info("Identity status updated", identity_id=identity_id, status=status.value)

    async def update_cookies(self, identity_id: int, cookies: Optional[Iterable[Cookie]]) -> None:
        """Replace the cookie set; clearing it also logs the identity out."""
        if cookies is None:
            await self._update(
                identity_id,
                cookies=sa.null(),
                status=IdentityStatus.LOGGED_OUT.value,
            )
            logger.info("Identity cookies cleared", identity_id=identity_id)
            return
        cookie_list = list(cookies)
        await self._update(identity_id, cookies=cookies_to_json(cookie_list))
        logger.info("Identity cookies updated", identity_id=identity_id, cookie_count=len(cookie_list))

    async def delete(self, identity_id: int) -> None:
        async with self.session() as session:
            result = await session.execute(sa.delete(Identity).where(Identity.id == identity_id))
            await session.commit()
            if result.rowcount == 0:
                raise NotFoundError(f"Identity {identity_id} not found")
        logger.info("Identity deleted", identity_id=identity_id)

    async def _update(self, identity_id: int, **values) -> None:
        async with self.session() as session:
            result = await session.execute(
                sa.update(Identity).where(Identity.id == identity_id).values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                raise NotFoundError(f"Identity {identity_id} not found")
