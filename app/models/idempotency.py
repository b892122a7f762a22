"""Stored outcomes of idempotent requests"""

from sqlalchemy import Column, String, DateTime, JSON, Integer, Uuid, UniqueConstraint
import enum

from .base import BaseModel, enum_type

class IdempotencyStatus(str, enum.Enum):
    STARTED = "started"
    COMPLETED = "completed"

class IdempotencyKey(BaseModel):
    """Keyed by (key, actor, route); expires after the retention window"""

    __tablename__ = "idempotency_keys"

    key = Column(String(255), nullable=False)
    actor_id = Column(Uuid, nullable=False)
    route = Column(String(120), nullable=False)
    request_hash = Column(String(64), nullable=False)
    status = Column(enum_type(IdempotencyStatus), default=IdempotencyStatus.STARTED, nullable=False)
    response_code = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("key", "actor_id", "route", name="uq_idempotency_key_actor_route"),
    )
