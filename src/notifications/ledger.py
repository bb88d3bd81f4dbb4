"""Delivery ledger: persisted status of every (notification, channel) delivery.

Every status change goes through ``_transition``, which checks the state
machine in memory and then repeats the check in SQL
(``WHERE status = ANY(<allowed sources>)``), so a row that another
process already moved to a terminal state is never overwritten.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from src.notifications.dead_letter import insert_dead_letter
from src.notifications.errors import InvalidTransitionError
from src.notifications.schemas import (
    ALLOWED_TRANSITIONS,
    DeadLetter,
    Delivery,
)
from src.storage.database import Database

logger = logging.getLogger(__name__)

_INSERT_SQL = """
    INSERT INTO deliveries (
        delivery_id, notification_id, channel, destination,
        status, attempts, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
"""

_SELECT_WITH_USER = """
    SELECT d.*, n.user_id
    FROM deliveries d
    JOIN notifications n ON n.notification_id = d.notification_id
"""


def _sources_for(target: str) -> list[str]:
    """Statuses from which ``target`` is reachable."""
    return sorted(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


async def insert_deliveries(conn: Any, deliveries: list[Delivery]) -> None:
    """Insert pending deliveries on an open connection (caller owns the transaction)."""
    await conn.executemany(
        _INSERT_SQL,
        [
            (
                d.delivery_id,
                d.notification_id,
                d.channel,
                d.destination,
                d.status,
                d.attempts,
                d.created_at,
            )
            for d in deliveries
        ],
    )


class DeliveryLedger:
    """Repository for delivery rows and their status transitions."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def _transition(
        self,
        delivery: Delivery,
        target: str,
        conn: Any | None = None,
        **fields: Any,
    ) -> Delivery:
        """Persist ``delivery.status -> target`` plus extra column updates.

        Raises:
            InvalidTransitionError: Illegal move, or the stored row has
                already left every state ``target`` can be reached from.
        """
        current = delivery.status
        delivery.transition(target)

        assignments = ["status = $2"]
        params: list[Any] = [delivery.delivery_id, target]
        param_idx = 3
        for column, value in fields.items():
            assignments.append(f"{column} = ${param_idx}")
            params.append(value)
            param_idx += 1

        sql = f"""
            UPDATE deliveries SET {", ".join(assignments)}
            WHERE delivery_id = $1 AND status = ANY(${param_idx}::text[])
            RETURNING delivery_id
        """
        params.append(_sources_for(target))

        if conn is not None:
            updated = await conn.fetchval(sql, *params)
        else:
            updated = await self._db.fetchval(sql, *params)

        if updated is None:
            delivery.status = current
            raise InvalidTransitionError(delivery.delivery_id, current, target)

        for column, value in fields.items():
            if hasattr(delivery, column):
                setattr(delivery, column, value)
        return delivery

    async def mark_retrying(self, delivery: Delivery, attempts: int, error: str) -> Delivery:
        return await self._transition(
            delivery, "retrying", attempts=attempts, error=error,
        )

    async def mark_sent(
        self,
        delivery: Delivery,
        attempts: int,
        provider_reference: str | None = None,
        error: str | None = None,
    ) -> Delivery:
        return await self._transition(
            delivery,
            "sent",
            attempts=attempts,
            provider_reference=provider_reference,
            error=error,
            sent_at=datetime.now(timezone.utc),
        )

    async def mark_failed(self, delivery: Delivery, attempts: int, error: str) -> Delivery:
        """Terminal failure without dead-lettering (non-retryable rejection)."""
        return await self._transition(
            delivery,
            "failed",
            attempts=attempts,
            error=error,
            failed_at=datetime.now(timezone.utc),
        )

    async def mark_bounced(self, delivery: Delivery, attempts: int, error: str) -> Delivery:
        return await self._transition(
            delivery,
            "bounced",
            attempts=attempts,
            error=error,
            failed_at=datetime.now(timezone.utc),
        )

    async def mark_exhausted(
        self,
        delivery: Delivery,
        attempts: int,
        error: str,
        dead_letter: DeadLetter,
    ) -> Delivery:
        """Mark ``failed`` and record the dead letter atomically."""
        async with self._db.transaction() as conn:
            await self._transition(
                delivery,
                "failed",
                conn=conn,
                attempts=attempts,
                error=error,
                failed_at=datetime.now(timezone.utc),
            )
            await insert_dead_letter(conn, dead_letter)
        logger.error(
            "Delivery %s (%s) dead-lettered after %d attempts: %s",
            delivery.delivery_id, delivery.channel, attempts, error,
        )
        return delivery

    async def mark_delivered(self, provider_reference: str) -> Delivery | None:
        """Provider callback: the message reached the recipient.

        Returns:
            The updated delivery, or None if no ``sent`` delivery carries
            this provider reference.
        """
        row = await self._db.fetchrow(
            """
            UPDATE deliveries SET status = 'delivered', delivered_at = NOW()
            WHERE provider_reference = $1 AND status = 'sent'
            RETURNING *
            """,
            provider_reference,
        )
        if row is None:
            return None
        return _row_to_delivery(row)

    async def get_for_notification(self, notification_id: str) -> list[Delivery]:
        rows = await self._db.fetch(
            _SELECT_WITH_USER + " WHERE d.notification_id = $1 ORDER BY d.channel",
            notification_id,
        )
        return [_row_to_delivery(row) for row in rows]

    async def get_pending(self, limit: int = 200) -> list[Delivery]:
        """Deliveries waiting to be (re)attempted, oldest first.

        Includes ``retrying`` rows whose retry loop was interrupted by a
        shutdown.
        """
        rows = await self._db.fetch(
            _SELECT_WITH_USER
            + """
            WHERE d.status IN ('pending', 'retrying')
            ORDER BY d.created_at
            LIMIT $1
            """,
            limit,
        )
        return [_row_to_delivery(row) for row in rows]

    async def count_sent_since(self, user_id: int, channel: str, since: datetime) -> int:
        """Deliveries sent to ``user_id`` on ``channel`` since ``since``.

        Used for per-user rate limiting.
        """
        count = await self._db.fetchval(
            """
            SELECT COUNT(*) FROM deliveries d
            JOIN notifications n ON n.notification_id = d.notification_id
            WHERE n.user_id = $1 AND d.channel = $2
              AND d.status IN ('sent', 'delivered') AND d.sent_at >= $3
            """,
            user_id,
            channel,
            since,
        )
        return count or 0


def _row_to_delivery(row: Any) -> Delivery:
    """Convert an asyncpg Record to a Delivery."""
    return Delivery(
        delivery_id=str(row["delivery_id"]),
        notification_id=str(row["notification_id"]),
        channel=row["channel"],
        destination=row["destination"],
        user_id=row.get("user_id"),
        status=row["status"],
        attempts=row.get("attempts", 0),
        provider_reference=row.get("provider_reference"),
        error=row.get("error"),
        created_at=row["created_at"],
        sent_at=row.get("sent_at"),
        delivered_at=row.get("delivered_at"),
        failed_at=row.get("failed_at"),
    )
