"""Account model tracking the activation state of remote accounts."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from activator.database import Base


class ActivationStatus(enum.Enum):
    PENDING = "pending"
    ACTIVATED = "Y"
    NOT_ACTIVATED = "N"  # new activation email requested, retry on a later pass


class Account(Base):
    __tablename__ = "accounts"

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    login: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    activated: Mapped[ActivationStatus] = mapped_column(
        Enum(
            ActivationStatus,
            name="activation_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ActivationStatus.PENDING,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
