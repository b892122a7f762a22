"""Base models and mixins for database models"""

from sqlalchemy import Column, DateTime, Uuid, Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, declared_attr
import uuid

from app.utils.helpers import utcnow

# Create declarative base
class Base(DeclarativeBase):
    pass

class TimestampedModel:
    """Mixin for adding created_at and updated_at timestamps"""

    @declared_attr
    def created_at(cls):
        return Column(
            DateTime,
            nullable=False,
            default=utcnow,
            index=True
        )

    @declared_attr
    def updated_at(cls):
        return Column(
            DateTime,
            nullable=False,
            default=utcnow,
            onupdate=utcnow
        )

class UUIDModel:
    """Mixin for adding UUID primary key"""

    @declared_attr
    def id(cls):
        return Column(
            Uuid,
            primary_key=True,
            default=uuid.uuid4,
            nullable=False
        )

class BaseModel(Base, UUIDModel, TimestampedModel):
    """Abstract base model with common functionality"""

    __abstract__ = True

    def __repr__(self):
        """String representation"""
        return f"<{self.__class__.__name__}(id={getattr(self, 'id', None)!r})>"

def enum_type(enum_cls):
    """Portable VARCHAR-backed enum storing member values"""
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )
