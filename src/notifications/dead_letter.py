"""Dead letter sink for deliveries that exhausted their retries.

Entries are written in the same transaction that marks the delivery
``failed`` (see ``DeliveryLedger.mark_exhausted``). They are never retried
automatically; an operator lists them and may replay one, which creates a
fresh pending delivery for the same (notification, channel) and therefore
the same idempotency key.
"""

import logging
from typing import Any

from src.notifications.schemas import DeadLetter, Delivery
from src.storage.database import Database

logger = logging.getLogger(__name__)

_INSERT_SQL = """
    INSERT INTO dead_letters (
        dead_letter_id, delivery_id, notification_id, channel,
        destination, reason, attempts, payload, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""


async def insert_dead_letter(conn: Any, dead_letter: DeadLetter) -> None:
    """Insert a dead letter on an open connection (caller owns the transaction)."""
    await conn.execute(
        _INSERT_SQL,
        dead_letter.dead_letter_id,
        dead_letter.delivery_id,
        dead_letter.notification_id,
        dead_letter.channel,
        dead_letter.destination,
        dead_letter.reason,
        dead_letter.attempts,
        dead_letter.payload,
        dead_letter.created_at,
    )


class DeadLetterSink:
    """Operator-facing access to dead-lettered deliveries."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def list(
        self,
        *,
        channel: str | None = None,
        include_replayed: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetter]:
        """Dead letters, newest first.

        Args:
            channel: Filter by channel.
            include_replayed: Include entries already replayed.
            limit: Maximum entries to return.
            offset: Offset for pagination.
        """
        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        if channel is not None:
            conditions.append(f"channel = ${param_idx}")
            params.append(channel)
            param_idx += 1

        if not include_replayed:
            conditions.append("replayed_at IS NULL")

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        sql = f"""
            SELECT * FROM dead_letters
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        rows = await self._db.fetch(sql, *params)
        return [_row_to_dead_letter(row) for row in rows]

    async def replay(self, dead_letter_id: str) -> Delivery | None:
        """Re-queue a dead letter as a new pending delivery.

        Returns:
            The new delivery, or None if the entry is unknown or was
            already replayed.
        """
        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                """
                UPDATE dead_letters SET replayed_at = NOW()
                WHERE dead_letter_id = $1 AND replayed_at IS NULL
                RETURNING *
                """,
                dead_letter_id,
            )
            if row is None:
                return None

            dead_letter = _row_to_dead_letter(row)
            delivery = Delivery(
                notification_id=dead_letter.notification_id,
                channel=dead_letter.channel,
                destination=dead_letter.destination,
            )
            await conn.execute(
                """
                INSERT INTO deliveries (
                    delivery_id, notification_id, channel, destination,
                    status, attempts, created_at
                ) VALUES ($1, $2, $3, $4, 'pending', 0, $5)
                """,
                delivery.delivery_id,
                delivery.notification_id,
                delivery.channel,
                delivery.destination,
                delivery.created_at,
            )

        logger.info(
            "Replayed dead letter %s as delivery %s",
            dead_letter_id, delivery.delivery_id,
        )
        return delivery


def _row_to_dead_letter(row: Any) -> DeadLetter:
    """Convert an asyncpg Record to a DeadLetter."""
    return DeadLetter(
        dead_letter_id=str(row["dead_letter_id"]),
        delivery_id=str(row["delivery_id"]),
        notification_id=str(row["notification_id"]),
        channel=row["channel"],
        destination=row["destination"],
        reason=row["reason"],
        attempts=row["attempts"],
        payload=row.get("payload") or {},
        replayed_at=row.get("replayed_at"),
        created_at=row["created_at"],
    )
