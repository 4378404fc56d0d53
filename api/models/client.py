"""Client and Competitor models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from api.database import Base
from api.models.base import utcnow

if TYPE_CHECKING:
    from api.models.run import EffectivenessRun


class Client(Base):
    """Client model - the site whose effectiveness is analyzed."""

    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website_url: Mapped[str] = mapped_column(String(2048), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    competitors: Mapped[list[Competitor]] = relationship(
        "Competitor",
        back_populates="client",
        cascade="all, delete-orphan",
        order_by="Competitor.created_at",
    )
    runs: Mapped[list[EffectivenessRun]] = relationship(
        "EffectivenessRun",
        back_populates="client",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Client {self.name} ({self.website_url})>"


class Competitor(Base):
    """Competitor model - competitor sites benchmarked against a client."""

    __tablename__ = "competitors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    client: Mapped[Client] = relationship("Client", back_populates="competitors")

    @property
    def url(self) -> str:
        """Competitor homepage URL (domains are stored bare)."""
        if self.domain.startswith(("http://", "https://")):
            return self.domain
        return f"https://{self.domain}"

    @property
    def label(self) -> str:
        """Display label."""
        return self.name or self.domain
