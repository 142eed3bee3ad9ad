from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.database import Base


class ConsumedChallenge(Base):
    __tablename__ = "consumed_challenges"

    # sha256 hex of the challenge seed; raw seeds are never stored
    seed_digest: Mapped[str] = mapped_column(String(64), primary_key=True)

    consumed_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC).replace(tzinfo=None), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
