"""
Durable record of which messages have been handled.

The store is the source of truth for "has this message already been
processed". The processor consults it before classifying or replying, and
writes exactly one record per message afterwards. Records are insert-only:
a second insert for the same (mailbox, message_id) raises
DuplicateRecordError instead of overwriting, which is what stops two
pollers from both replying to one message.

SQLAlchemy sessions are synchronous; each call runs in a worker thread so
the event loop is never blocked on disk or network I/O.

Usage:
    store = ProcessedStore.from_url("sqlite:///data/mailpilot.db", mailbox="office@uni.edu")
    if not await store.has_processed(message.id):
        ...
        await store.record_outcome(record)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from mailpilot.logging.audit import audit
from mailpilot.pipeline.schemas import (
    ClassificationResult,
    ErrorKind,
    ProcessedRecord,
    RecordStats,
    RecordStatus,
)
from mailpilot.storage.database import create_db_engine, init_db, make_session_factory, session_scope
from mailpilot.storage.models import ProcessedEmail

logger = logging.getLogger(__name__)

# SQLite variable limit is 999 on older builds; stay well under it.
_ID_CHUNK = 500


def _mailbox_key(mailbox: Optional[str]) -> str:
    """
    Records are keyed by mailbox, so the key must be known before the first
    write and stay the same across restarts.
    """
    key = (mailbox or "").lower().strip()
    if not key:
        raise ValueError("ProcessedStore needs the mailbox address its records belong to")
    return key


class DuplicateRecordError(Exception):
    """A record for this message already exists."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} already has a processed record")
        self.message_id = message_id


class ProcessedStore:
    """ProcessedRecord persistence for one mailbox."""

    def __init__(self, engine: Engine, mailbox: str):
        self._mailbox = _mailbox_key(mailbox)
        self._engine = engine
        self._sessions = make_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str, mailbox: str) -> "ProcessedStore":
        mailbox = _mailbox_key(mailbox)
        engine = create_db_engine(database_url)
        init_db(engine)
        return cls(engine, mailbox=mailbox)

    @property
    def mailbox(self) -> str:
        return self._mailbox

    def dispose(self) -> None:
        self._engine.dispose()

    # =========================================================================
    # READS
    # =========================================================================

    async def has_processed(self, message_id: str) -> bool:
        return await asyncio.to_thread(self._has_processed, message_id)

    def _has_processed(self, message_id: str) -> bool:
        with session_scope(self._sessions) as session:
            row = session.execute(
                select(ProcessedEmail.message_id).where(
                    ProcessedEmail.mailbox == self._mailbox,
                    ProcessedEmail.message_id == message_id,
                )
            ).first()
            return row is not None

    async def processed_ids(self, message_ids: Iterable[str]) -> set[str]:
        """Subset of `message_ids` that already have records."""
        return await asyncio.to_thread(self._processed_ids, list(message_ids))

    def _processed_ids(self, message_ids: list[str]) -> set[str]:
        found: set[str] = set()
        with session_scope(self._sessions) as session:
            for i in range(0, len(message_ids), _ID_CHUNK):
                chunk = message_ids[i:i + _ID_CHUNK]
                rows = session.execute(
                    select(ProcessedEmail.message_id).where(
                        ProcessedEmail.mailbox == self._mailbox,
                        ProcessedEmail.message_id.in_(chunk),
                    )
                ).scalars()
                found.update(rows)
        return found

    async def list_recent(self, window: timedelta, limit: int = 500) -> list[ProcessedRecord]:
        """Records processed within `window` of now, newest first."""
        return await asyncio.to_thread(self._list_recent, window, limit)

    def _list_recent(self, window: timedelta, limit: int) -> list[ProcessedRecord]:
        cutoff = datetime.now(timezone.utc) - window
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(ProcessedEmail)
                .where(
                    ProcessedEmail.mailbox == self._mailbox,
                    ProcessedEmail.processed_at >= cutoff,
                )
                .order_by(ProcessedEmail.processed_at.desc())
                .limit(limit)
            ).scalars().all()
            return [self._to_record(row) for row in rows]

    async def stats(self, window: timedelta) -> RecordStats:
        return await asyncio.to_thread(self._stats, window)

    def _stats(self, window: timedelta) -> RecordStats:
        cutoff = datetime.now(timezone.utc) - window
        with session_scope(self._sessions) as session:
            counts = dict(
                session.execute(
                    select(ProcessedEmail.status, func.count())
                    .where(
                        ProcessedEmail.mailbox == self._mailbox,
                        ProcessedEmail.processed_at >= cutoff,
                    )
                    .group_by(ProcessedEmail.status)
                ).all()
            )
        return RecordStats(
            total=sum(counts.values()),
            processed=counts.get(RecordStatus.PROCESSED.value, 0),
            replied=counts.get(RecordStatus.REPLIED.value, 0),
            errors=counts.get(RecordStatus.ERROR.value, 0),
        )

    # =========================================================================
    # WRITES
    # =========================================================================

    async def record_outcome(self, record: ProcessedRecord) -> None:
        """
        Insert the record for one message.

        Raises:
            DuplicateRecordError: if this message already has a record.
        """
        await asyncio.to_thread(self._record_outcome, record)

    def _record_outcome(self, record: ProcessedRecord) -> None:
        c = record.classification
        row = ProcessedEmail(
            mailbox=self._mailbox,
            message_id=record.message_id,
            subject=record.subject,
            sender_address=record.sender_address,
            sender_name=record.sender_name,
            category=c.category.value if c else None,
            priority=c.priority.value if c else None,
            should_reply=c.should_reply if c else None,
            confidence=c.confidence if c else None,
            classification=c.model_dump(mode="json") if c else None,
            reply_text=record.reply_text,
            status=record.status.value,
            error_kind=record.error_kind.value if record.error_kind else None,
            error_detail=record.error_detail,
            processed_at=record.processed_at,
        )
        try:
            with session_scope(self._sessions) as session:
                session.add(row)
        except IntegrityError as e:
            raise DuplicateRecordError(record.message_id) from e

    async def clear(self) -> int:
        """Delete every record for this mailbox. Operator action only."""
        removed = await asyncio.to_thread(self._clear)
        audit.warning("store.records.cleared", mailbox=self._mailbox, removed=removed)
        return removed

    def _clear(self) -> int:
        with session_scope(self._sessions) as session:
            result = session.execute(
                delete(ProcessedEmail).where(ProcessedEmail.mailbox == self._mailbox)
            )
            return result.rowcount or 0

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    @staticmethod
    def _to_record(row: ProcessedEmail) -> ProcessedRecord:
        processed_at = row.processed_at
        if processed_at.tzinfo is None:
            # SQLite drops the offset; everything is stored in UTC.
            processed_at = processed_at.replace(tzinfo=timezone.utc)

        classification: Optional[ClassificationResult] = None
        if row.classification:
            classification = ClassificationResult.model_validate(row.classification)

        return ProcessedRecord(
            message_id=row.message_id,
            mailbox=row.mailbox,
            subject=row.subject,
            sender_address=row.sender_address,
            sender_name=row.sender_name,
            classification=classification,
            reply_text=row.reply_text,
            processed_at=processed_at,
            status=RecordStatus(row.status),
            error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
            error_detail=row.error_detail,
        )
