"""
Data models for the auto-reply pipeline.

These Pydantic models define the shape of everything flowing between the
mailbox adapter, classifier, processor, store and poller. Messages,
classifications and records are frozen: they are produced once and never
mutated afterwards.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Category(str, Enum):
    QUESTION = "question"
    COMPLAINT = "complaint"
    SUPPORT = "support"
    SPAM = "spam"
    GENERAL = "general"
    SYSTEM = "system"


class RecordStatus(str, Enum):
    PROCESSED = "processed"
    REPLIED = "replied"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Why a record ended up with status=error. Drives operator remediation."""
    TRANSPORT = "transport"          # network/HTTP failure, retry next time
    PERMISSION = "permission"        # token lacks Mail.Send, reauthorize
    CLASSIFICATION = "classification"
    INTERNAL = "internal"


class InboundMessage(BaseModel):
    """A message as fetched from the mailbox provider."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Provider-assigned message ID")
    subject: str = Field(default="No Subject")
    sender_address: str = Field(default="")
    sender_name: str = Field(default="Unknown")
    body: str = Field(default="", description="Plain text body, or the preview for HTML mail")
    body_preview: str = Field(default="")
    received_at: Optional[datetime] = Field(default=None)
    is_read: bool = Field(default=False)
    conversation_id: str = Field(default="")


class ClassificationResult(BaseModel):
    """
    The classifier's decision for one message.

    Accepts the camelCase keys the LLM is asked to produce
    (shouldReply, suggestedReply) as well as snake_case.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    should_reply: bool = Field(validation_alias=AliasChoices("should_reply", "shouldReply"))
    priority: Priority = Field(default=Priority.MEDIUM)
    category: Category = Field(default=Category.GENERAL)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    suggested_reply: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "suggested_reply", "suggestedReply", "suggestedResponse", "reply"
        ),
    )
    source: str = Field(default="llm", description="llm, keyword or system")

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value):
        if not isinstance(value, str):
            return value
        value = value.strip().lower()
        # Models occasionally invent labels ("inquiry", "feedback").
        if value not in {c.value for c in Category}:
            return Category.GENERAL.value
        return value

    @field_validator("suggested_reply", mode="before")
    @classmethod
    def _blank_reply_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


SYSTEM_CLASSIFICATION = ClassificationResult(
    should_reply=False,
    priority=Priority.LOW,
    category=Category.SYSTEM,
    confidence=1.0,
    source="system",
)


class FilterResult(BaseModel):
    """Result of running a message through the system-mail filter."""
    filtered: bool
    reason: Optional[str] = None
    detail: Optional[str] = None


class ProcessedRecord(BaseModel):
    """
    The durable outcome of one message's pass through the pipeline.

    At most one record exists per (mailbox, message_id). That uniqueness is
    the at-most-once reply guarantee.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str
    mailbox: str = Field(default="")
    subject: str = Field(default="")
    sender_address: str = Field(default="")
    sender_name: str = Field(default="")
    classification: Optional[ClassificationResult] = Field(default=None)
    reply_text: Optional[str] = Field(default=None)
    processed_at: datetime
    status: RecordStatus
    error_kind: Optional[ErrorKind] = Field(default=None)
    error_detail: Optional[str] = Field(default=None)


class RecordStats(BaseModel):
    total: int = 0
    processed: int = 0
    replied: int = 0
    errors: int = 0


class CycleReport(BaseModel):
    """Summary of one processor cycle."""
    started_at: datetime
    duration_ms: int = 0
    fetched: int = 0
    already_processed: int = 0
    system: int = 0
    classified: int = 0
    replied: int = 0
    errors: int = 0
    newly_processed: int = Field(default=0, description="Records written this cycle")


class PollerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_seconds: float
    adaptive: bool = True
    max_interval_seconds: float = 900.0
    empty_checks_before_backoff: int = 10


class PollerStatus(BaseModel):
    """Read-only snapshot of the poller."""
    running: bool
    last_check_time: Optional[datetime] = None
    processed_count: int = 0
    config: PollerConfig
    current_interval_seconds: float
    consecutive_empty_checks: int = 0
    cycle_in_progress: bool = False
    last_error: Optional[str] = None


class SendTestMailRequest(BaseModel):
    """Operator request to send one message through the configured mailbox."""
    to: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    subject: str = Field(default="mailpilot test message", max_length=255)
    body: str = Field(default="This is a test message sent from the mailpilot operator API.")
