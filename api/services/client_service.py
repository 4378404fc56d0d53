"""Client service for client and competitor lookups."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.exceptions import NotFoundError
from api.models import Client, Competitor


class ClientService:
    """Service for client operations."""

    async def get_client(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
    ) -> Client:
        """Get a client by ID with its competitors loaded."""
        result = await db.execute(
            select(Client).options(selectinload(Client.competitors)).where(Client.id == client_id)
        )
        client = result.scalar_one_or_none()
        if not client:
            raise NotFoundError("Client", str(client_id))
        return client

    async def list_competitors(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        *,
        limit: int | None = None,
    ) -> list[Competitor]:
        """List a client's competitors, oldest first."""
        query = (
            select(Competitor)
            .where(Competitor.client_id == client_id)
            .order_by(Competitor.created_at, Competitor.id)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())


# Singleton instance
client_service = ClientService()
