"""
LLM prompt templates and response parsing for the classifier.

This is the single file to edit when you need to change how the AI
triages email or drafts replies. No other code changes needed.

IMPORTANT:
- Never put actual email content in this file. These are templates.
- The {placeholders} are filled in at runtime by the classifier.
- The model is asked for strict JSON, but responses are parsed
  defensively: prose and ```json fences around the object are tolerated.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from mailpilot.pipeline.schemas import ClassificationResult, InboundMessage

logger = logging.getLogger(__name__)

# Body text beyond this is cut before it goes into a prompt.
MAX_BODY_CHARS = 2000
MAX_BATCH_BODY_CHARS = 800

# =============================================================================
# SYSTEM PROMPT
# =============================================================================

CLASSIFY_SYSTEM = """\
You are the email assistant for {institution}. You triage incoming email and \
draft short, professional replies on the institution's behalf.
Always answer with a single JSON object and nothing else.

Rules:
- Reply only to questions, support requests and complaints.
- Never reply to spam, promotions, newsletters or automated notifications.
- Reply in the same language the sender wrote in.
- Be concise but complete. Do not invent deadlines, fees or policies that are \
not in the reference material.
{instructions}{knowledge}"""

INSTRUCTIONS_BLOCK = "\nInstitution instructions:\n{instructions}\n"

KNOWLEDGE_BLOCK = """
--- REFERENCE MATERIAL (use it to answer; do not quote it verbatim) ---
{knowledge}
--- END REFERENCE MATERIAL ---
"""

# =============================================================================
# USER PROMPTS
# =============================================================================

RESULT_SHAPE = """\
{{
  "shouldReply": true or false,
  "priority": "low" | "medium" | "high",
  "category": "question" | "complaint" | "support" | "spam" | "general",
  "confidence": number between 0 and 1,
  "suggestedReply": "reply text, or empty string when shouldReply is false"
}}"""

CLASSIFY_USER = """\
Classify the following email and draft a reply if one is warranted.

Subject: {subject}
From: {sender_name} <{sender_address}>
Body:
{body}

Respond ONLY with JSON of this exact shape:
""" + RESULT_SHAPE

CLASSIFY_BATCH_USER = """\
Classify each of the following {count} emails and draft replies where warranted.

{emails}

Respond ONLY with JSON of this exact shape, one entry per email, using the \
ids given above:
{{"results": [{{"id": "<email id>", ...fields below...}}]}}

Fields for each entry:
""" + RESULT_SHAPE

BATCH_EMAIL_ENTRY = """\
=== Email id: {id} ===
Subject: {subject}
From: {sender_name} <{sender_address}>
Body:
{body}
"""


def build_system_prompt(institution: str, instructions: str = "", knowledge: str = "") -> str:
    return CLASSIFY_SYSTEM.format(
        institution=institution,
        instructions=INSTRUCTIONS_BLOCK.format(instructions=instructions.strip()) if instructions.strip() else "",
        knowledge=KNOWLEDGE_BLOCK.format(knowledge=knowledge.strip()) if knowledge.strip() else "",
    )


def build_classify_prompt(message: InboundMessage) -> str:
    return CLASSIFY_USER.format(
        subject=message.subject,
        sender_name=message.sender_name,
        sender_address=message.sender_address,
        body=(message.body or message.body_preview)[:MAX_BODY_CHARS],
    )


def build_batch_prompt(messages: list[InboundMessage]) -> str:
    entries = "\n".join(
        BATCH_EMAIL_ENTRY.format(
            id=m.id,
            subject=m.subject,
            sender_name=m.sender_name,
            sender_address=m.sender_address,
            body=(m.body or m.body_preview)[:MAX_BATCH_BODY_CHARS],
        )
        for m in messages
    )
    return CLASSIFY_BATCH_USER.format(count=len(messages), emails=entries)


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def extract_json_object(raw_response: str) -> dict:
    """
    Return the first JSON object embedded in `raw_response`.

    Handles bare JSON, JSON inside ```json fences, and JSON preceded or
    followed by prose.

    Raises:
        ValueError: if no decodable JSON object is present.
    """
    decoder = json.JSONDecoder()
    start = raw_response.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(raw_response, start)
        except json.JSONDecodeError:
            start = raw_response.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = raw_response.find("{", start + 1)
    raise ValueError("Response does not contain a JSON object")


def parse_classification(raw_response: str, source: str = "llm") -> ClassificationResult:
    """
    Parse one classification from an LLM response.

    Raises:
        ValueError: on missing JSON or a shape that fails validation
                    (pydantic's ValidationError is a ValueError).
    """
    data = extract_json_object(raw_response)
    data["source"] = source
    return ClassificationResult.model_validate(data)


def parse_batch(raw_response: str, source: str = "llm") -> dict[str, ClassificationResult]:
    """
    Parse a batched response into {message_id: result}.

    Entries that are malformed or lack an id are skipped (and logged) so
    the caller can classify those messages individually.

    Raises:
        ValueError: if there is no {"results": [...]} object at all.
    """
    data = extract_json_object(raw_response)
    entries = data.get("results")
    if not isinstance(entries, list):
        raise ValueError('Batch response has no "results" list')

    parsed: dict[str, ClassificationResult] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        try:
            parsed[str(entry["id"])] = ClassificationResult.model_validate({**entry, "source": source})
        except ValidationError as e:
            logger.warning(
                "classifier.batch_entry.invalid",
                extra={
                    "action": "classifier.batch_entry.invalid",
                    "message_id": str(entry["id"]),
                    "error_count": e.error_count(),
                },
            )
    return parsed


# =============================================================================
# KNOWLEDGE BASE AND FOOTER
# =============================================================================

def load_knowledge_excerpt(path: Optional[str], max_chars: int = 4000) -> str:
    """
    Read the knowledge-base text file, trimmed to max_chars.

    Returns "" if no path is configured or the file is missing.
    """
    if not path:
        return ""
    file = Path(path)
    if not file.exists():
        logger.warning(
            "knowledge_base.missing",
            extra={"action": "knowledge_base.missing", "path": path},
        )
        return ""
    text = file.read_text(encoding="utf-8").strip()
    if len(text) > max_chars:
        # Cut at the last paragraph break that fits, if there is one.
        cut = text.rfind("\n\n", 0, max_chars)
        text = text[: cut if cut > max_chars // 2 else max_chars].rstrip()
    return text


def ensure_footer(reply: str, footer: str) -> str:
    """
    Append the automated-response footer unless it's already there.
    """
    if not footer or footer.lower() in reply.lower():
        return reply
    return f"{reply.rstrip()}\n\n--\n{footer}"
