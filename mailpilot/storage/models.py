"""
Database models for processed-message records.

The composite primary key (mailbox, message_id) is what makes the
at-most-once reply guarantee hold across restarts and across several
pollers sharing one database: a second insert for the same message fails.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProcessedEmail(Base):
    """One row per message that completed a pass through the pipeline."""

    __tablename__ = "processed_emails"

    mailbox = Column(String(320), primary_key=True)
    message_id = Column(String(512), primary_key=True)

    subject = Column(String(998), nullable=False, default="")
    sender_address = Column(String(320), nullable=False, default="")
    sender_name = Column(String(320), nullable=False, default="")

    # Flattened for dashboard queries; the full snapshot is in classification.
    category = Column(String(32), nullable=True)
    priority = Column(String(16), nullable=True)
    should_reply = Column(Boolean, nullable=True)
    confidence = Column(Float, nullable=True)
    classification = Column(JSON, nullable=True)

    reply_text = Column(Text, nullable=True)
    status = Column(String(16), nullable=False)
    error_kind = Column(String(32), nullable=True)
    error_detail = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_processed_emails_mailbox_processed_at", "mailbox", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedEmail(message_id='{self.message_id}', status='{self.status}')>"
