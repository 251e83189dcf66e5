import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from flowrouter.database import Base


class BotUser(Base):
    __tablename__ = "bot_users"
    __table_args__ = (UniqueConstraint("bot_id", "telegram_user_id", name="uq_bot_users_bot_user"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(UUID(as_uuid=True), ForeignKey("bots.id", ondelete="CASCADE"), nullable=False)
    telegram_user_id = Column(BigInteger, nullable=False)
    first_name = Column(Text)
    last_name = Column(Text)
    username = Column(Text)
    language_code = Column(Text)
    phone_number = Column(Text)
    email = Column(Text)
    interaction_count = Column(Integer, nullable=False, default=1)
    first_interaction_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    last_interaction_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
