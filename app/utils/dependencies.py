"""
Common dependencies for FastAPI
"""

from typing import Optional
import uuid

from fastapi import Query, Depends, Header, Request
from pydantic import BaseModel

from app.core.cache import RedisCache, cache
from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import ForbiddenError, ValidationError
from app.services.email_service import EmailService
from .pagination import PaginationParams

ADMIN_ROLE = "admin"

class Actor(BaseModel):
    """Caller identity forwarded by the upstream auth layer"""
    id: uuid.UUID
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

def get_pagination_params(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Page size")
) -> PaginationParams:
    """Get pagination parameters from query"""
    return PaginationParams(page=page, limit=limit)

async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Resolve the calling actor from forwarded identity headers

    Raises:
        ForbiddenError: If no actor is supplied
        ValidationError: If the actor ID is not a UUID
    """
    if not x_actor_id:
        raise ForbiddenError("Authentication required")
    try:
        actor_id = uuid.UUID(x_actor_id)
    except ValueError:
        raise ValidationError("Invalid actor ID")
    return Actor(id=actor_id, role=(x_actor_role or "user").strip().lower())

async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require admin role"""
    if not actor.is_admin:
        raise ForbiddenError("Admin access required")
    return actor

def get_idempotency_key(idempotency_key: Optional[str] = Header(None)) -> Optional[str]:
    if idempotency_key is None:
        return None
    return idempotency_key.strip() or None

def get_gateway(request: Request):
    """PayMongo client created in the application lifespan"""
    return request.app.state.gateway

def get_breaker(request: Request) -> CircuitBreaker:
    return request.app.state.commission_breaker

def get_notifier(request: Request) -> Optional[EmailService]:
    return getattr(request.app.state, "notifier", None)

def get_cache() -> RedisCache:
    return cache
