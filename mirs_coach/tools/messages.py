"""
Message persistence for dialogic feedback conversations.

Schema: dialogic_feedback_message
    (id, user_id, conversation_grade_id, role, content, category_detected, created_at)
"""

import logging
from typing import List, Optional

import asyncpg

from mirs_coach.errors import UpstreamError
from mirs_coach.models.feedback import StoredMessage

logger = logging.getLogger(__name__)

SQL_INSERT_MESSAGE = """
INSERT INTO dialogic_feedback_message
    (user_id, conversation_grade_id, role, content, category_detected)
VALUES ($1, $2, $3, $4, $5);
"""

SQL_SELECT_MESSAGES = """
SELECT id, role, content, category_detected, created_at
FROM dialogic_feedback_message
WHERE user_id = $1 AND conversation_grade_id = $2
ORDER BY created_at, id;
"""


class MessageStore:
    """Append-only store of coaching turns, one thread per (user, grade)."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.pool = db_pool

    async def insert_message(
        self,
        user_id: int,
        conversation_grade_id: int,
        role: str,
        content: str,
        category_detected: Optional[str] = None
    ) -> None:
        """
        Persist one message.

        Raises:
            UpstreamError: Database failure
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    SQL_INSERT_MESSAGE,
                    user_id,
                    conversation_grade_id,
                    role,
                    content,
                    category_detected or None,
                )
        except Exception as e:
            logger.error(f"Failed to save {role} message for grade {conversation_grade_id}: {e}")
            raise UpstreamError(f"Failed to save {role} message") from e

    async def list_messages(
        self,
        user_id: int,
        conversation_grade_id: int
    ) -> List[StoredMessage]:
        """
        Load a conversation oldest first.

        Raises:
            UpstreamError: Database failure
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(SQL_SELECT_MESSAGES, user_id, conversation_grade_id)
        except Exception as e:
            logger.error(f"Failed to load conversation history for grade {conversation_grade_id}: {e}")
            raise UpstreamError("Failed to load conversation history") from e

        return [
            StoredMessage(
                id=row["id"],
                role=row["role"],
                content=row["content"],
                category_detected=row["category_detected"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
