"""
Idempotency guard for side-effecting requests

Records are keyed by (key, actor, route) and kept for IDEMPOTENCY_TTL_DAYS;
outside that window a reused key is treated as a new request.
"""

from typing import Any, Awaitable, Callable, Optional
from datetime import timedelta
import logging
import uuid

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ConflictError
from app.models import IdempotencyKey, IdempotencyStatus
from app.utils.helpers import hash_payload, utcnow

logger = logging.getLogger(__name__)

class IdempotencyService:
    """Runs a handler at most once per idempotency key"""

    def __init__(self, db: AsyncSession, ttl_days: Optional[int] = None):
        self.db = db
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else settings.IDEMPOTENCY_TTL_DAYS)

    async def _find(self, key: str, actor_id: uuid.UUID, route: str) -> Optional[IdempotencyKey]:
        result = await self.db.execute(
            select(IdempotencyKey)
            .where(
                IdempotencyKey.key == key,
                IdempotencyKey.actor_id == actor_id,
                IdempotencyKey.route == route,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _delete(self, record_id: uuid.UUID) -> None:
        await self.db.execute(delete(IdempotencyKey).where(IdempotencyKey.id == record_id))
        await self.db.commit()

    async def with_idempotency(
        self,
        key: Optional[str],
        actor_id: uuid.UUID,
        route: str,
        body: Any,
        handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Execute handler once per (key, actor, route)

        Args:
            key: Caller-supplied idempotency key; None runs the handler directly
            actor_id: Requesting actor
            route: Logical operation name
            body: Request payload, hashed to detect key reuse
            handler: Coroutine factory performing the operation

        Returns:
            JSON-compatible handler result, or the stored result on replay

        Raises:
            ConflictError: On key reuse with a different payload or a concurrent duplicate
        """
        if not key:
            return jsonable_encoder(await handler())

        request_hash = hash_payload(jsonable_encoder(body))
        record = await self._find(key, actor_id, route)

        if record and record.expires_at <= utcnow():
            logger.info(f"Idempotency key expired, discarding: route={route} key={key}")
            await self._delete(record.id)
            record = None

        if record:
            if record.status == IdempotencyStatus.COMPLETED:
                if record.request_hash != request_hash:
                    raise ConflictError(
                        "Idempotency key was already used with a different request payload",
                        error_code="IDEMPOTENCY_KEY_REUSED",
                    )
                logger.info(f"Idempotent replay: route={route} key={key}")
                return record.response_body
            raise ConflictError("Request already in progress", error_code="REQUEST_IN_PROGRESS")

        record = IdempotencyKey(
            id=uuid.uuid4(),
            key=key,
            actor_id=actor_id,
            route=route,
            request_hash=request_hash,
            status=IdempotencyStatus.STARTED,
            expires_at=utcnow() + self.ttl,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Request already in progress", error_code="REQUEST_IN_PROGRESS")
        record_id = record.id

        try:
            result = jsonable_encoder(await handler())
        except Exception:
            await self.db.rollback()
            await self._delete(record_id)
            raise

        await self.db.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.id == record_id)
            .values(
                status=IdempotencyStatus.COMPLETED,
                response_code=200,
                response_body=result,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result

    async def purge_expired(self) -> int:
        """Delete records past the retention window"""
        result = await self.db.execute(
            delete(IdempotencyKey).where(IdempotencyKey.expires_at <= utcnow())
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired idempotency keys")
        return result.rowcount or 0
