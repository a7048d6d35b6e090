"""
Audit logging for pipeline outcomes.

Records what the pipeline decided and did: messages fetched, records
written, replies sent, cycles completed, records cleared by an operator.

PRIVACY: Never pass message bodies, reply text, or LLM prompts/responses.
Subjects, message ids, statuses and sender domains are fine.

Usage:
    from mailpilot.logging.audit import audit
    audit.info("processor.record.saved", message_id="AAMk...", status="replied")
"""

import logging
from typing import Any


def sender_domain(address: str) -> str:
    """Reduce an address to its domain for logging."""
    return address.rsplit("@", 1)[-1].lower() if "@" in address else "unknown"


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self, name: str = "audit"):
        self._logger = logging.getLogger(name)

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra={"action": action, **fields})

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra={"action": action, **fields})

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra={"action": action, **fields})


audit = AuditLogger()
