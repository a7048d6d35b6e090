"""
System-mail filter.

Decides which messages are automated (bounces, no-reply senders, security
notices, our own auto-replies echoing back) and must never reach the
classifier or get a reply.

Usage:
    from mailpilot.pipeline.filters import check_system_mail
    result = check_system_mail(message, rules, owner_address="office@uni.edu")
    if result.filtered:
        print(f"System mail: {result.detail}")
"""

from typing import Optional

from mailpilot.pipeline.rules import MailRules
from mailpilot.pipeline.schemas import FilterResult, InboundMessage


def check_system_mail(
    message: InboundMessage,
    rules: MailRules,
    owner_address: Optional[str] = None,
) -> FilterResult:
    """
    Classify a message as system-originated or not.

    Mail from the mailbox owner is special: it is only excluded when the
    subject looks like our own reply coming back ("Re: Re: ..."). Anything
    else the owner sends to their own inbox is a normal candidate, so they
    can test the auto-responder by emailing themselves.

    Otherwise a message is system mail if any of these hold:
    1. sender address contains a system pattern ("noreply", "postmaster", ...)
    2. subject contains a system keyword ("undeliverable", "verification", ...)
    3. sender domain is a known system domain
    """
    sender = (message.sender_address or "").lower().strip()
    subject = (message.subject or "").lower()

    if owner_address and sender == owner_address.lower().strip():
        if rules.is_self_reply_subject(subject):
            return FilterResult(
                filtered=True,
                reason="self_reply",
                detail=f"Own auto-reply echoed back: {message.subject[:50]}",
            )
        return FilterResult(filtered=False)

    if any(p in sender for p in rules.system_sender_patterns):
        return FilterResult(
            filtered=True,
            reason="system_sender",
            detail=f"System sender: {message.sender_name} ({sender})",
        )

    if any(k in subject for k in rules.system_subject_keywords):
        return FilterResult(
            filtered=True,
            reason="system_subject",
            detail=f"System subject: {message.subject[:50]}",
        )

    if any(sender.endswith(f"@{d}") for d in rules.system_domains):
        return FilterResult(
            filtered=True,
            reason="system_domain",
            detail=f"System domain: {sender.rsplit('@', 1)[-1]}",
        )

    return FilterResult(filtered=False)
