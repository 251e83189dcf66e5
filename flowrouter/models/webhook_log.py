import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from flowrouter.database import Base


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(UUID(as_uuid=True), ForeignKey("bots.id", ondelete="CASCADE"), nullable=False)
    state_key = Column(Text, nullable=False)
    telegram_user_id = Column(BigInteger, nullable=False)
    webhook_url = Column(Text, nullable=False)  # or integration:<type>
    request_payload = Column(JSONB)
    response_status = Column(Integer)
    response_body = Column(JSONB)
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
