import uuid

from sqlalchemy import BigInteger, Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from flowrouter.database import Base


class Bot(Base):
    __tablename__ = "bots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(BigInteger, nullable=False)  # tenant owner
    name = Column(Text, nullable=False)
    token = Column(Text, nullable=False)  # encrypted salt:iv:tag:ciphertext
    webhook_secret = Column(Text)
    definition = Column("schema", JSONB)  # dialogue definition
    schema_version = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
