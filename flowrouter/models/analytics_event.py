import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from flowrouter.database import Base


class AnalyticsEvent(Base):
    __tablename__ = "bot_analytics"
    # One event of each type per provider update; redeliveries hit the conflict clause
    __table_args__ = (
        UniqueConstraint("bot_id", "source_update_id", "event_type", name="uq_bot_analytics_update_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(UUID(as_uuid=True), ForeignKey("bots.id", ondelete="CASCADE"), nullable=False)
    telegram_user_id = Column(BigInteger, nullable=False)
    source_update_id = Column(BigInteger)
    event_type = Column(Text, nullable=False)  # bot_start, button_click, state_transition, contact_shared, email_shared
    state_from = Column(Text)
    state_to = Column(Text)
    button_text = Column(Text)
    event_data = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
