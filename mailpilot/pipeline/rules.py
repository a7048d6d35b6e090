"""
Mail rules: system-mail patterns and fallback classifier vocabulary.

These lists are product tuning, not logic, so they live in a YAML file
(config/rules.yaml). Any key missing from the file keeps its built-in
default. All patterns are lowercased and stripped at load time, so
matching is always case-insensitive.

Usage:
    from mailpilot.pipeline.rules import MailRules
    rules = MailRules.from_yaml("config/rules.yaml")
    rules.system_domains  # → ("accountprotection.microsoft.com", ...)
"""

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_SENDER_PATTERNS = (
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "account-security-noreply",
    "postmaster",
    "mailer-daemon",
    "bounce",
    "notification",
    "alerts",
    "system",
    "automated",
    "robot",
    "bot",
)

DEFAULT_SYSTEM_SUBJECT_KEYWORDS = (
    "undeliverable",
    "delivery status",
    "mail delivery",
    "bounce",
    "notification",
    "alert",
    "security",
    "account",
    "verification",
    "welcome",
    "confirmation",
)

DEFAULT_SYSTEM_DOMAINS = (
    "accountprotection.microsoft.com",
    "microsoft.com",
    "office365.com",
    "azure.com",
)

# Two or more stacked "Re:" prefixes: our own auto-reply coming back around.
DEFAULT_SELF_REPLY_PATTERN = r"(re:\s*){2,}"

# Checked in this order; the first category with a hit wins.
DEFAULT_CATEGORY_KEYWORDS = {
    "question": (
        "pergunta", "dúvida", "duvida", "como", "quando", "onde", "por que",
        "question", "how do", "how can", "when is", "where is", "could you",
    ),
    "complaint": (
        "reclamação", "reclamacao", "problema", "erro", "não funciona", "bug",
        "complaint", "problem", "not working", "refund",
    ),
    "support": (
        "suporte", "ajuda", "assistência", "assistencia", "técnico",
        "support", "help", "assistance",
    ),
    "spam": (
        "promoção", "promocao", "oferta", "desconto", "marketing", "newsletter",
        "unsubscribe", "limited offer",
    ),
}

DEFAULT_REPLY_TEMPLATES = {
    "question": (
        "Hello,\n\nThank you for your question. We are reviewing your request "
        "and will get back to you with a detailed answer shortly.\n\n"
        "Best regards,\n{institution}"
    ),
    "complaint": (
        "Hello,\n\nWe received your message and are sorry for the inconvenience. "
        "Our team is looking into it and will contact you to resolve the situation.\n\n"
        "Best regards,\n{institution}"
    ),
    "support": (
        "Hello,\n\nThank you for contacting us. Our support team is reviewing "
        "your request and will respond shortly.\n\n"
        "Best regards,\n{institution}"
    ),
    "general": (
        "Hello,\n\nThank you for your email. We received your message and will "
        "be in touch soon.\n\n"
        "Best regards,\n{institution}"
    ),
}


class RulesConfigError(Exception):
    """Raised when the rules file exists but cannot be used."""


@dataclass(frozen=True)
class MailRules:
    """Immutable, normalized rule set."""

    system_sender_patterns: tuple[str, ...] = DEFAULT_SYSTEM_SENDER_PATTERNS
    system_subject_keywords: tuple[str, ...] = DEFAULT_SYSTEM_SUBJECT_KEYWORDS
    system_domains: tuple[str, ...] = DEFAULT_SYSTEM_DOMAINS
    self_reply_pattern: str = DEFAULT_SELF_REPLY_PATTERN
    category_keywords: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_KEYWORDS)
    )
    reply_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_REPLY_TEMPLATES)
    )

    def __post_init__(self):
        try:
            compiled = re.compile(self.self_reply_pattern, re.IGNORECASE)
        except re.error as e:
            raise RulesConfigError(f"Invalid self_reply_pattern: {e}") from e
        object.__setattr__(self, "_self_reply_re", compiled)

    def is_self_reply_subject(self, subject: str) -> bool:
        return bool(self._self_reply_re.search(subject or ""))

    @classmethod
    def from_yaml(cls, yaml_path: Optional[str]) -> "MailRules":
        """
        Load rules from YAML. A missing file means "all defaults".

        Raises:
            RulesConfigError: if the file is not valid YAML or not a mapping.
        """
        if not yaml_path or not Path(yaml_path).exists():
            logger.info(
                "rules.defaults_used",
                extra={"action": "rules.defaults_used", "path": yaml_path},
            )
            return cls()

        try:
            with open(yaml_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RulesConfigError(f"Rules file {yaml_path} is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise RulesConfigError(f"Rules file {yaml_path} must contain a mapping")

        rules = cls.from_dict(data)
        logger.info(
            "rules.loaded",
            extra={
                "action": "rules.loaded",
                "path": yaml_path,
                "sender_patterns": len(rules.system_sender_patterns),
                "subject_keywords": len(rules.system_subject_keywords),
                "system_domains": len(rules.system_domains),
                "categories": list(rules.category_keywords),
            },
        )
        return rules

    @classmethod
    def from_dict(cls, data: dict) -> "MailRules":
        rules = cls()
        updates = {}

        for key in ("system_sender_patterns", "system_subject_keywords", "system_domains"):
            if key in data:
                updates[key] = _normalize_list(data[key])

        if "self_reply_pattern" in data and data["self_reply_pattern"]:
            updates["self_reply_pattern"] = str(data["self_reply_pattern"])

        if isinstance(data.get("category_keywords"), dict):
            updates["category_keywords"] = {
                str(cat).lower().strip(): _normalize_list(words)
                for cat, words in data["category_keywords"].items()
            }

        if isinstance(data.get("reply_templates"), dict):
            templates = dict(rules.reply_templates)
            templates.update(
                {str(cat).lower().strip(): str(text) for cat, text in data["reply_templates"].items()}
            )
            updates["reply_templates"] = templates

        return replace(rules, **updates)


def _normalize_list(values) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(v.lower().strip() for v in values if isinstance(v, str) and v.strip())
