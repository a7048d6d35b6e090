"""
Shared fixtures: an in-memory mailbox, a message factory and a real
SQLite-backed store under tmp_path.
"""

from datetime import datetime, timezone
from typing import Optional

import pytest

from mailpilot.logging.config import setup_logging
from mailpilot.pipeline.schemas import InboundMessage
from mailpilot.storage.store import ProcessedStore


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


class FakeMailbox:
    """MailProvider that keeps messages in a list and records every call."""

    def __init__(self, messages=None, owner: Optional[str] = "office@uni.edu"):
        self.messages: list[InboundMessage] = list(messages or [])
        self.owner = owner
        self.replies: list[tuple[str, str]] = []
        self.marked_read: list[str] = []
        self.list_calls = 0
        self.owner_calls = 0
        self.list_error: Optional[Exception] = None
        self.reply_errors: dict[str, Exception] = {}
        self.mark_read_errors: dict[str, Exception] = {}
        self.sent: list[tuple[str, str, str]] = []
        self.send_error: Optional[Exception] = None

    async def list_unread(self, limit: int) -> list[InboundMessage]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [m for m in self.messages if m.id not in self.marked_read][:limit]

    async def mark_read(self, message_id: str) -> None:
        if message_id in self.mark_read_errors:
            raise self.mark_read_errors[message_id]
        self.marked_read.append(message_id)

    async def send_reply(self, message_id: str, body: str) -> None:
        if message_id in self.reply_errors:
            raise self.reply_errors[message_id]
        self.replies.append((message_id, body))

    async def send_mail(self, to_address: str, subject: str, body: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to_address, subject, body))

    async def get_owner_address(self) -> Optional[str]:
        self.owner_calls += 1
        return self.owner

    def replied_ids(self) -> list[str]:
        return [mid for mid, _ in self.replies]


def _message(
    id: str = "m1",
    subject: str = "Question about enrollment",
    sender: str = "student@gmail.com",
    body: str = "How do I apply for the spring term?",
    is_read: bool = False,
) -> InboundMessage:
    return InboundMessage(
        id=id,
        subject=subject,
        sender_address=sender,
        sender_name=sender.split("@")[0],
        body=body,
        body_preview=body[:100],
        received_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        is_read=is_read,
        conversation_id=f"conv-{id}",
    )


@pytest.fixture
def make_message():
    return _message


@pytest.fixture
def mailbox_factory():
    return FakeMailbox


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'records.db'}"


@pytest.fixture
def store(db_url):
    s = ProcessedStore.from_url(db_url, mailbox="office@uni.edu")
    yield s
    s.dispose()
