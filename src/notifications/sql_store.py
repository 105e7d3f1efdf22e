"""SQLAlchemy-backed push token store.

Tables:
- push_tokens: one row per device token, unique on the token value
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    make_url,
    select,
    update,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from src.notifications.config import Platform, TokenFormat, UserType
from src.notifications.lifecycle import (
    DEFAULT_FAILURE_THRESHOLD,
    FailureDecision,
    clamp_score,
    decide_on_failure,
)
from src.notifications.models import (
    HealthMetrics,
    PushToken,
    TokenMetadata,
    ValidationErrorEntry,
    mask_token,
)
from src.notifications.token_store import SAME_DEVICE_REASON, BaseTokenStore

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _error_entry(error: str, when: datetime) -> dict:
    return {"error": error, "timestamp": when.isoformat()}


class PushTokenRow(Base):
    """Registered device token with health bookkeeping."""

    __tablename__ = "push_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(4096), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_type = Column(String(20), nullable=False, default=UserType.STAFF.value)
    platform = Column(String(10), nullable=False)
    device_id = Column(String(128))
    device_name = Column(String(256))
    app_version = Column(String(32))
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Health
    validation_score = Column(Integer, nullable=False, default=100)
    is_healthy = Column(Boolean, nullable=False, default=True)
    failure_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    last_health_check = Column(DateTime(timezone=True))
    last_failure = Column(DateTime(timezone=True))
    last_success = Column(DateTime(timezone=True))
    validation_errors = Column(JSON, nullable=False, default=list)

    # Format
    token_format = Column(String(10), nullable=False, default=TokenFormat.UNKNOWN.value)
    token_type = Column(String(32))
    token_platform = Column(String(16))
    is_legacy = Column(Boolean)

    deactivation_reason = Column(Text)
    deactivated_at = Column(DateTime(timezone=True))
    last_used = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def to_domain(self) -> PushToken:
        return PushToken(
            user_id=self.user_id,
            token=self.token,
            platform=Platform(self.platform),
            user_type=UserType(self.user_type),
            device_id=self.device_id,
            device_name=self.device_name,
            app_version=self.app_version,
            is_active=self.is_active,
            health=HealthMetrics(
                last_health_check=_aware(self.last_health_check),
                validation_score=self.validation_score,
                is_healthy=self.is_healthy,
                failure_count=self.failure_count,
                success_count=self.success_count,
                last_failure=_aware(self.last_failure),
                last_success=_aware(self.last_success),
            ),
            validation_errors=[
                ValidationErrorEntry(
                    error=e["error"], timestamp=datetime.fromisoformat(e["timestamp"])
                )
                for e in (self.validation_errors or [])
            ],
            token_metadata=TokenMetadata(
                token_type=self.token_type,
                platform=self.token_platform,
                is_legacy=self.is_legacy,
            ),
            token_format=TokenFormat(self.token_format),
            deactivation_reason=self.deactivation_reason,
            deactivated_at=_aware(self.deactivated_at),
            last_used=_aware(self.last_used),
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )

    @classmethod
    def from_domain(cls, record: PushToken) -> "PushTokenRow":
        return cls(
            token=record.token,
            user_id=record.user_id,
            user_type=record.user_type.value,
            platform=record.platform.value,
            device_id=record.device_id,
            device_name=record.device_name,
            app_version=record.app_version,
            is_active=record.is_active,
            validation_score=clamp_score(record.health.validation_score),
            is_healthy=record.health.is_healthy,
            failure_count=record.health.failure_count,
            success_count=record.health.success_count,
            last_health_check=record.health.last_health_check,
            last_failure=record.health.last_failure,
            last_success=record.health.last_success,
            validation_errors=[e.to_dict() for e in record.validation_errors],
            token_format=record.token_format.value,
            token_type=record.token_metadata.token_type,
            token_platform=record.token_metadata.platform,
            is_legacy=record.token_metadata.is_legacy,
            deactivation_reason=record.deactivation_reason,
            deactivated_at=record.deactivated_at,
            last_used=record.last_used,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def create_token_engine(database_url: str, timeout_seconds: Optional[float] = None):
    """Create an engine whose connects and pool checkouts give up after ``timeout_seconds``.

    In-memory SQLite shares one connection across threads.
    """
    url = make_url(database_url)
    backend = url.get_backend_name()
    connect_args: dict = {}

    if backend == "sqlite":
        if timeout_seconds:
            connect_args["timeout"] = timeout_seconds
        if url.database in (None, "", ":memory:"):
            connect_args["check_same_thread"] = False
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    elif timeout_seconds and backend in ("postgresql", "mysql"):
        connect_args["connect_timeout"] = max(1, int(timeout_seconds))

    kwargs = {"pool_timeout": timeout_seconds} if timeout_seconds else {}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True, **kwargs)


class SQLTokenStore(BaseTokenStore):
    """Token store persisted through a synchronous SQLAlchemy engine.

    Every mutating operation runs in its own transaction. Failure counting
    is a single ``UPDATE ... SET failure_count = failure_count + 1`` so
    concurrent failures for one token are never lost, and the row stays
    locked while its error log is appended. An in-memory database shares
    one connection, so there transactions are also serialised in-process.
    """

    def __init__(
        self,
        engine=None,
        database_url: Optional[str] = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        create_tables: bool = True,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(failure_threshold)
        if engine is None:
            if database_url is None:
                raise ValueError("SQLTokenStore requires an engine or a database_url")
            engine = create_token_engine(database_url, timeout_seconds)
        self.engine = engine
        self._lock = threading.Lock() if isinstance(engine.pool, StaticPool) else nullcontext()
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    def register(self, record: PushToken) -> tuple[PushToken, bool]:
        now = _now()
        with self._lock, self._session_factory.begin() as session:
            row = session.execute(
                select(PushTokenRow).where(PushTokenRow.token == record.token)
            ).scalar_one_or_none()

            if row is not None:
                row.user_id = record.user_id
                row.user_type = record.user_type.value
                row.platform = record.platform.value
                row.device_id = record.device_id
                row.device_name = record.device_name
                row.app_version = record.app_version
                row.token_format = record.token_format.value
                row.token_type = record.token_metadata.token_type
                row.token_platform = record.token_metadata.platform
                row.is_legacy = record.token_metadata.is_legacy
                row.is_active = True
                row.deactivation_reason = None
                row.deactivated_at = None
                row.last_used = now
                row.updated_at = now
                session.flush()
                return row.to_domain(), False

            row = PushTokenRow.from_domain(record)
            session.add(row)

            if record.device_id:
                siblings = session.execute(
                    select(PushTokenRow).where(
                        PushTokenRow.user_id == record.user_id,
                        PushTokenRow.device_id == record.device_id,
                        PushTokenRow.token != record.token,
                        PushTokenRow.is_active.is_(True),
                    )
                ).scalars().all()
                for sibling in siblings:
                    self._deactivate_row(sibling, SAME_DEVICE_REASON, now)

            session.flush()
            stored = row.to_domain()

        logger.info("Registered push token %s for user %s", mask_token(record.token), record.user_id)
        return stored, True

    def get(self, token: str) -> Optional[PushToken]:
        with self._lock, self._session_factory() as session:
            row = session.execute(
                select(PushTokenRow).where(PushTokenRow.token == token)
            ).scalar_one_or_none()
            return row.to_domain() if row else None

    def find_by_user(self, user_id: str, active_only: bool = True) -> list[PushToken]:
        stmt = select(PushTokenRow).where(PushTokenRow.user_id == user_id)
        if active_only:
            stmt = stmt.where(PushTokenRow.is_active.is_(True))
        stmt = stmt.order_by(PushTokenRow.created_at)
        with self._lock, self._session_factory() as session:
            return [row.to_domain() for row in session.execute(stmt).scalars()]

    def list_all(self) -> list[PushToken]:
        with self._lock, self._session_factory() as session:
            rows = session.execute(select(PushTokenRow).order_by(PushTokenRow.id)).scalars()
            return [row.to_domain() for row in rows]

    def list_active(self) -> list[PushToken]:
        stmt = select(PushTokenRow).where(PushTokenRow.is_active.is_(True)).order_by(PushTokenRow.id)
        with self._lock, self._session_factory() as session:
            return [row.to_domain() for row in session.execute(stmt).scalars()]

    def find_inactive(self, tokens: Iterable[str]) -> set[str]:
        tokens = list(dict.fromkeys(tokens))
        if not tokens:
            return set()
        stmt = select(PushTokenRow.token).where(
            PushTokenRow.token.in_(tokens),
            PushTokenRow.is_active.is_(False),
        )
        with self._lock, self._session_factory() as session:
            return set(session.execute(stmt).scalars())

    def record_use(self, token: str) -> bool:
        now = _now()
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                update(PushTokenRow)
                .where(PushTokenRow.token == token)
                .values(last_used=now, updated_at=now)
            )
            return result.rowcount > 0

    def record_success(self, token: str) -> bool:
        now = _now()
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                update(PushTokenRow)
                .where(PushTokenRow.token == token)
                .values(
                    updated_at=now,
                    last_success=now,
                    success_count=PushTokenRow.success_count + 1,
                    failure_count=0,
                    is_healthy=True,
                )
            )
            return result.rowcount > 0

    def record_failure(self, token: str, error_msg: str) -> Optional[FailureDecision]:
        now = _now()
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                update(PushTokenRow)
                .where(PushTokenRow.token == token)
                .values(
                    failure_count=PushTokenRow.failure_count + 1,
                    last_failure=now,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                return None

            # the UPDATE above holds the row lock until commit
            row = session.execute(
                select(PushTokenRow).where(PushTokenRow.token == token).with_for_update()
            ).scalar_one()
            session.refresh(row)
            row.validation_errors = list(row.validation_errors or []) + [_error_entry(error_msg, now)]

            decision = decide_on_failure(row.failure_count, self.failure_threshold)
            deactivated_now = decision.should_deactivate and row.is_active
            if deactivated_now:
                row.is_healthy = False
                self._deactivate_row(row, decision.reason, now)

        if deactivated_now:
            logger.warning("Deactivated push token %s: %s", mask_token(token), decision.reason)
        return decision

    def deactivate(self, token: str, reason: str) -> bool:
        with self._lock, self._session_factory.begin() as session:
            row = session.execute(
                select(PushTokenRow).where(PushTokenRow.token == token)
            ).scalar_one_or_none()
            if row is None:
                return False
            if row.is_active:
                self._deactivate_row(row, reason, _now())
            return True

    def update_health(
        self,
        token: str,
        score: int,
        is_healthy: bool,
        checked_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                update(PushTokenRow)
                .where(PushTokenRow.token == token)
                .values(
                    validation_score=clamp_score(score),
                    is_healthy=is_healthy,
                    last_health_check=checked_at or _now(),
                )
            )
            return result.rowcount > 0

    def delete(self, token: str) -> bool:
        with self._lock, self._session_factory.begin() as session:
            row = session.execute(
                select(PushTokenRow).where(PushTokenRow.token == token)
            ).scalar_one_or_none()
            if row is None:
                return False
            session.delete(row)
            return True

    @staticmethod
    def _deactivate_row(row: PushTokenRow, reason: str, now: datetime) -> None:
        row.is_active = False
        row.deactivation_reason = reason
        row.deactivated_at = now
        row.updated_at = now
        row.validation_errors = list(row.validation_errors or []) + [_error_entry(reason, now)]
