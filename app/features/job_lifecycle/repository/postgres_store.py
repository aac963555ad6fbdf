"""
PostgreSQL entity store.

Rows map 1:1 onto the domain models (see app/db/schema.sql); nested job data is
stored as JSONB and validated back through pydantic on read.

Usage:
    store = PostgresEntityStore()
    job = await store.get_job(job_id)

    async with store.transaction() as tx:
        saved = await tx.save_job(job, expected_version=job.version)
        await tx.append_timeline(entry)
"""

from collections.abc import AsyncGenerator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb
from pydantic import BaseModel

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Role, UserAccount

from ..domain.errors import ConflictError, DuplicateRecordError, StorageUnavailableError
from ..domain.models import (
    ChatMessage,
    Job,
    JobStatus,
    JobTimelineEntry,
    MechanicProfile,
    Notification,
    Payment,
    PaymentStatus,
    PushToken,
    Quote,
    Review,
)
from .base import EntityStore

logger = get_logger(__name__)

JOB_COLUMNS = (
    "id", "customer_id", "mechanic_id", "title", "description", "category", "status",
    "urgency", "vehicle", "location", "current_location", "eta", "scheduled_start",
    "scheduled_end", "parts", "timer_entries", "totals", "photos", "notes",
    "created_at", "updated_at", "started_at", "completed_at", "version",
)  # fmt: skip
JOB_JSON_FIELDS = frozenset(
    {"vehicle", "location", "current_location", "parts", "timer_entries", "totals", "photos"}
)

QUOTE_COLUMNS = (
    "id", "job_id", "customer_id", "mechanic_id", "description", "labor_cost", "parts_cost",
    "travel_cost", "tax", "amount", "currency", "status", "valid_until",
    "estimated_duration_minutes", "line_items", "created_at", "updated_at", "accepted_at",
    "version",
)  # fmt: skip

TIMELINE_COLUMNS = (
    "id", "job_id", "event", "from_status", "to_status", "actor_id", "description",
    "metadata", "created_at",
)  # fmt: skip

REVIEW_COLUMNS = (
    "id", "job_id", "reviewer_id", "reviewee_id", "rating", "category_ratings", "comment",
    "photos", "is_hidden", "report_count", "created_at", "updated_at",
)  # fmt: skip

NOTIFICATION_COLUMNS = (
    "id", "user_id", "type", "title", "message", "data", "read", "delivered", "created_at",
)  # fmt: skip

MESSAGE_COLUMNS = ("id", "job_id", "sender_id", "content", "type", "read_at", "created_at")

PAYMENT_COLUMNS = (
    "id", "job_id", "customer_id", "intent_id", "amount", "currency", "kind", "status",
    "created_at", "updated_at",
)  # fmt: skip

# Versioned rows: these are stamped by the UPDATE itself.
_SERVER_MANAGED = frozenset({"id", "created_at", "updated_at", "version"})


def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
    names = ", ".join(columns)
    placeholders = ", ".join(f"%({c})s" for c in columns)
    return f"INSERT INTO {table} ({names}) VALUES ({placeholders}) RETURNING *"


def _versioned_update_sql(table: str, columns: tuple[str, ...]) -> str:
    assignments = ", ".join(f"{c} = %({c})s" for c in columns if c not in _SERVER_MANAGED)
    return f"""
        UPDATE {table}
        SET {assignments}, version = version + 1, updated_at = NOW()
        WHERE id = %(id)s AND version = %(expected_version)s
        RETURNING *
    """


def _params(model: BaseModel, json_fields: frozenset[str] = frozenset()) -> dict[str, Any]:
    params = model.model_dump()
    if json_fields:
        encoded = model.model_dump(mode="json", include=set(json_fields))
        for name in json_fields:
            value = encoded.get(name)
            params[name] = Jsonb(value) if value is not None else None
    return params


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate database helper failures into store-level errors."""
    try:
        yield
    except DatabaseError as e:
        if e.is_unique_violation:
            raise DuplicateRecordError(str(e)) from e
        raise StorageUnavailableError(str(e), operation=operation) from e


_fetch_one_with_retry = with_db_retry()(fetch_one)
_fetch_all_with_retry = with_db_retry()(fetch_all)


class PostgresEntityStore(EntityStore):
    """Entity store over the shared psycopg pool.

    Instances created by ``transaction()`` are bound to one connection; all
    statements they issue run inside that transaction.
    """

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._conn = connection

    async def _one(self, query: str, params: tuple | dict, operation: str) -> dict | None:
        with _storage_errors(operation):
            if self._conn is None:
                return await _fetch_one_with_retry(query, params)
            return await fetch_one(query, params, connection=self._conn)

    async def _all(self, query: str, params: tuple | dict, operation: str) -> list[dict]:
        with _storage_errors(operation):
            if self._conn is None:
                return await _fetch_all_with_retry(query, params)
            return await fetch_all(query, params, connection=self._conn)

    async def _write(self, query: str, params: tuple | dict, operation: str) -> dict | None:
        # Writes are not retried; a retried INSERT could double-apply
        with _storage_errors(operation):
            return await fetch_one(query, params, connection=self._conn)

    async def _execute(self, query: str, params: tuple | dict, operation: str) -> int:
        with _storage_errors(operation):
            return await execute_query(query, params, connection=self._conn)

    # -- users -----------------------------------------------------------
    async def get_user(self, user_id: str) -> UserAccount | None:
        row = await self._one(
            "SELECT id, role, email, first_name, last_name, is_active FROM users WHERE id = %s",
            (user_id,),
            "get_user",
        )
        return UserAccount.model_validate(row) if row else None

    async def list_users_by_role(self, role: Role) -> list[UserAccount]:
        rows = await self._all(
            """
            SELECT id, role, email, first_name, last_name, is_active
            FROM users
            WHERE role = %s AND is_active
            """,
            (role.value,),
            "list_users_by_role",
        )
        return [UserAccount.model_validate(r) for r in rows]

    async def get_mechanic_profile(self, user_id: str) -> MechanicProfile | None:
        row = await self._one(
            "SELECT * FROM mechanic_profiles WHERE user_id = %s", (user_id,), "get_mechanic_profile"
        )
        return MechanicProfile.model_validate(row) if row else None

    async def save_mechanic_profile(self, profile: MechanicProfile) -> MechanicProfile:
        row = await self._write(
            """
            INSERT INTO mechanic_profiles (user_id, average_rating, total_reviews, updated_at)
            VALUES (%(user_id)s, %(average_rating)s, %(total_reviews)s, NOW())
            ON CONFLICT (user_id) DO UPDATE
            SET average_rating = EXCLUDED.average_rating,
                total_reviews = EXCLUDED.total_reviews,
                updated_at = NOW()
            RETURNING *
            """,
            profile.model_dump(),
            "save_mechanic_profile",
        )
        return MechanicProfile.model_validate(row)

    # -- jobs ------------------------------------------------------------
    async def insert_job(self, job: Job) -> Job:
        row = await self._write(
            _insert_sql("jobs", JOB_COLUMNS), _params(job, JOB_JSON_FIELDS), "insert_job"
        )
        return Job.model_validate(row)

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._one("SELECT * FROM jobs WHERE id = %s", (job_id,), "get_job")
        return Job.model_validate(row) if row else None

    async def save_job(self, job: Job, expected_version: int) -> Job:
        params = _params(job, JOB_JSON_FIELDS)
        params["expected_version"] = expected_version
        row = await self._write(_versioned_update_sql("jobs", JOB_COLUMNS), params, "save_job")
        if not row:
            raise ConflictError("job", job.id, expected_version)
        return Job.model_validate(row)

    async def list_jobs_for_user(
        self, user_id: str, status: JobStatus | None = None, limit: int = 50
    ) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE (customer_id = %(user_id)s OR mechanic_id = %(user_id)s)
              AND (%(status)s::text IS NULL OR status = %(status)s)
            ORDER BY created_at DESC
            LIMIT %(limit)s
        """
        params = {"user_id": user_id, "status": status.value if status else None, "limit": limit}
        rows = await self._all(query, params, "list_jobs_for_user")
        return [Job.model_validate(r) for r in rows]

    async def list_open_jobs(self, limit: int = 50) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE status IN ('PENDING', 'QUOTED')
            ORDER BY created_at DESC
            LIMIT %(limit)s
        """
        rows = await self._all(query, {"limit": limit}, "list_open_jobs")
        return [Job.model_validate(r) for r in rows]

    async def list_jobs_awaiting_review(self, user_id: str, limit: int = 10) -> list[Job]:
        query = """
            SELECT j.* FROM jobs j
            WHERE j.status = 'COMPLETED'
              AND (j.customer_id = %(user_id)s OR j.mechanic_id = %(user_id)s)
              AND NOT EXISTS (
                  SELECT 1 FROM reviews r
                  WHERE r.job_id = j.id AND r.reviewer_id = %(user_id)s
              )
            ORDER BY j.updated_at DESC
            LIMIT %(limit)s
        """
        rows = await self._all(
            query, {"user_id": user_id, "limit": limit}, "list_jobs_awaiting_review"
        )
        return [Job.model_validate(r) for r in rows]

    async def append_timeline(self, entry: JobTimelineEntry) -> JobTimelineEntry:
        row = await self._write(
            _insert_sql("job_timeline", TIMELINE_COLUMNS),
            _params(entry, frozenset({"metadata"})),
            "append_timeline",
        )
        return JobTimelineEntry.model_validate(row)

    async def list_timeline(self, job_id: str) -> list[JobTimelineEntry]:
        rows = await self._all(
            "SELECT * FROM job_timeline WHERE job_id = %s ORDER BY created_at, id",
            (job_id,),
            "list_timeline",
        )
        return [JobTimelineEntry.model_validate(r) for r in rows]

    # -- quotes ----------------------------------------------------------
    async def insert_quote(self, quote: Quote) -> Quote:
        row = await self._write(
            _insert_sql("quotes", QUOTE_COLUMNS),
            _params(quote, frozenset({"line_items"})),
            "insert_quote",
        )
        return Quote.model_validate(row)

    async def get_quote(self, quote_id: str) -> Quote | None:
        row = await self._one("SELECT * FROM quotes WHERE id = %s", (quote_id,), "get_quote")
        return Quote.model_validate(row) if row else None

    async def save_quote(self, quote: Quote, expected_version: int) -> Quote:
        params = _params(quote, frozenset({"line_items"}))
        params["expected_version"] = expected_version
        row = await self._write(
            _versioned_update_sql("quotes", QUOTE_COLUMNS), params, "save_quote"
        )
        if not row:
            raise ConflictError("quote", quote.id, expected_version)
        return Quote.model_validate(row)

    async def list_quotes_for_job(self, job_id: str) -> list[Quote]:
        rows = await self._all(
            "SELECT * FROM quotes WHERE job_id = %s ORDER BY created_at",
            (job_id,),
            "list_quotes_for_job",
        )
        return [Quote.model_validate(r) for r in rows]

    # -- reviews ---------------------------------------------------------
    async def insert_review(self, review: Review) -> Review:
        row = await self._write(
            _insert_sql("reviews", REVIEW_COLUMNS),
            _params(review, frozenset({"category_ratings", "photos"})),
            "insert_review",
        )
        return Review.model_validate(row)

    async def get_review(self, review_id: str) -> Review | None:
        row = await self._one("SELECT * FROM reviews WHERE id = %s", (review_id,), "get_review")
        return Review.model_validate(row) if row else None

    async def find_review(self, job_id: str, reviewer_id: str) -> Review | None:
        row = await self._one(
            "SELECT * FROM reviews WHERE job_id = %s AND reviewer_id = %s",
            (job_id, reviewer_id),
            "find_review",
        )
        return Review.model_validate(row) if row else None

    async def set_review_hidden(self, review_id: str, is_hidden: bool) -> Review | None:
        row = await self._write(
            "UPDATE reviews SET is_hidden = %s, updated_at = NOW() WHERE id = %s RETURNING *",
            (is_hidden, review_id),
            "set_review_hidden",
        )
        return Review.model_validate(row) if row else None

    async def increment_review_reports(self, review_id: str) -> Review | None:
        row = await self._write(
            """
            UPDATE reviews SET report_count = report_count + 1, updated_at = NOW()
            WHERE id = %s
            RETURNING *
            """,
            (review_id,),
            "increment_review_reports",
        )
        return Review.model_validate(row) if row else None

    async def list_reviews_for_reviewee(
        self, reviewee_id: str, include_hidden: bool = False
    ) -> list[Review]:
        rows = await self._all(
            """
            SELECT * FROM reviews
            WHERE reviewee_id = %s AND (%s OR NOT is_hidden)
            ORDER BY created_at DESC
            """,
            (reviewee_id, include_hidden),
            "list_reviews_for_reviewee",
        )
        return [Review.model_validate(r) for r in rows]

    # -- notifications ---------------------------------------------------
    async def insert_notification(self, notification: Notification) -> Notification:
        row = await self._write(
            _insert_sql("notifications", NOTIFICATION_COLUMNS),
            _params(notification, frozenset({"data"})),
            "insert_notification",
        )
        return Notification.model_validate(row)

    async def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> list[Notification]:
        rows = await self._all(
            """
            SELECT * FROM notifications
            WHERE user_id = %s AND (NOT %s OR NOT read)
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (user_id, unread_only, limit, offset),
            "list_notifications",
        )
        return [Notification.model_validate(r) for r in rows]

    async def count_unread_notifications(self, user_id: str) -> int:
        with _storage_errors("count_unread_notifications"):
            count = await fetch_val(
                "SELECT COUNT(*) FROM notifications WHERE user_id = %s AND NOT read",
                (user_id,),
                connection=self._conn,
            )
        return int(count or 0)

    async def mark_notification_read(self, notification_id: str, user_id: str) -> Notification | None:
        row = await self._write(
            "UPDATE notifications SET read = TRUE WHERE id = %s AND user_id = %s RETURNING *",
            (notification_id, user_id),
            "mark_notification_read",
        )
        return Notification.model_validate(row) if row else None

    async def mark_all_notifications_read(self, user_id: str) -> int:
        return await self._execute(
            "UPDATE notifications SET read = TRUE WHERE user_id = %s AND NOT read",
            (user_id,),
            "mark_all_notifications_read",
        )

    async def mark_notification_delivered(self, notification_id: str) -> None:
        await self._execute(
            "UPDATE notifications SET delivered = TRUE WHERE id = %s",
            (notification_id,),
            "mark_notification_delivered",
        )

    # -- messages --------------------------------------------------------
    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        row = await self._write(
            _insert_sql("messages", MESSAGE_COLUMNS), _params(message), "insert_message"
        )
        return ChatMessage.model_validate(row)

    async def list_messages(
        self, job_id: str, limit: int = 50, before: datetime | None = None
    ) -> list[ChatMessage]:
        rows = await self._all(
            """
            SELECT * FROM (
                SELECT * FROM messages
                WHERE job_id = %s AND (%s::timestamptz IS NULL OR created_at < %s)
                ORDER BY created_at DESC
                LIMIT %s
            ) recent
            ORDER BY created_at ASC
            """,
            (job_id, before, before, limit),
            "list_messages",
        )
        return [ChatMessage.model_validate(r) for r in rows]

    async def mark_messages_read(self, job_id: str, reader_id: str) -> int:
        return await self._execute(
            """
            UPDATE messages SET read_at = NOW()
            WHERE job_id = %s AND sender_id <> %s AND read_at IS NULL
            """,
            (job_id, reader_id),
            "mark_messages_read",
        )

    # -- payments --------------------------------------------------------
    async def insert_payment(self, payment: Payment) -> Payment:
        row = await self._write(
            _insert_sql("payments", PAYMENT_COLUMNS), _params(payment), "insert_payment"
        )
        return Payment.model_validate(row)

    async def get_payment_by_intent(self, intent_id: str) -> Payment | None:
        row = await self._one(
            "SELECT * FROM payments WHERE intent_id = %s", (intent_id,), "get_payment_by_intent"
        )
        return Payment.model_validate(row) if row else None

    async def transition_payment(
        self, payment_id: str, expected: PaymentStatus, target: PaymentStatus
    ) -> Payment | None:
        row = await self._write(
            """
            UPDATE payments SET status = %s, updated_at = NOW()
            WHERE id = %s AND status = %s
            RETURNING *
            """,
            (target.value, payment_id, expected.value),
            "transition_payment",
        )
        return Payment.model_validate(row) if row else None

    async def list_payments_for_job(self, job_id: str) -> list[Payment]:
        rows = await self._all(
            "SELECT * FROM payments WHERE job_id = %s ORDER BY created_at",
            (job_id,),
            "list_payments_for_job",
        )
        return [Payment.model_validate(r) for r in rows]

    # -- push tokens -----------------------------------------------------
    async def upsert_push_token(self, token: PushToken) -> PushToken:
        row = await self._write(
            """
            INSERT INTO push_tokens (token, user_id, platform, created_at)
            VALUES (%(token)s, %(user_id)s, %(platform)s, %(created_at)s)
            ON CONFLICT (token) DO UPDATE
            SET user_id = EXCLUDED.user_id, platform = EXCLUDED.platform
            RETURNING *
            """,
            token.model_dump(),
            "upsert_push_token",
        )
        return PushToken.model_validate(row)

    async def list_push_tokens(self, user_id: str) -> list[PushToken]:
        rows = await self._all(
            "SELECT * FROM push_tokens WHERE user_id = %s", (user_id,), "list_push_tokens"
        )
        return [PushToken.model_validate(r) for r in rows]

    # -- units of work ---------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["PostgresEntityStore", None]:
        if self._conn is not None:
            # Nested unit of work: psycopg opens a savepoint
            async with self._conn.transaction():
                yield self
            return

        try:
            async with db_pool.transaction() as conn:
                yield PostgresEntityStore(conn)
        except psycopg.Error as e:
            logger.error("Entity store transaction failed", error=str(e))
            raise StorageUnavailableError(f"Transaction failed: {e}", operation="transaction") from e
