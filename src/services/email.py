"""
Email address and message utilities.

This module provides reusable functions for normalizing addresses and
building Message objects from the normalized payloads handed over by the
mail-ingestion collaborator. Raw MIME parsing happens upstream.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from domain.models import Message

logger = logging.getLogger(__name__)

_ANGLE_ADDRESS = re.compile(r'<([^>]+)>')

SYSTEM_LOCAL_PREFIXES = ('system', 'admin', 'support', 'service', 'notification', 'no-reply', 'noreply')

REPLY_PREFIXES = ('re:', 'reply:', 'fw:', 'fwd:')


def normalize_address(value: Optional[str]) -> str:
    """
    Normalize an address to its bare lowercase form.

    Args:
        value: Address, optionally with display name ("Name <a@b.com>")

    Returns:
        str: Lowercase address without display name, or empty string

    Example:
        >>> normalize_address('Jane Doe <Jane@Example.COM>')
        'jane@example.com'
    """
    if not value:
        return ''
    match = _ANGLE_ADDRESS.search(value)
    address = match.group(1) if match else value
    return address.strip().lower()


def normalize_addresses(values: Any) -> Tuple[str, ...]:
    """
    Normalize a recipient field to a tuple of addresses.

    Accepts a list, a comma-separated string, or None. Empty entries and
    duplicates are dropped, first occurrence wins.
    """
    if not values:
        return ()
    if isinstance(values, str):
        values = values.split(',')

    seen = []
    for value in values:
        address = normalize_address(value)
        if address and address not in seen:
            seen.append(address)
    return tuple(seen)


def address_domain(address: str) -> str:
    """Return the lowercase domain part of an address ('' if none)."""
    normalized = normalize_address(address)
    if '@' not in normalized:
        return ''
    return normalized.rsplit('@', 1)[1]


def domain_matches(domain: str, candidates: Iterable[str]) -> bool:
    """
    Check a domain against a list using exact-or-suffix matching.

    Example:
        >>> domain_matches('mail.good.com', ['good.com'])
        True
        >>> domain_matches('notgood.com', ['good.com'])
        False
    """
    domain = (domain or '').lower()
    if not domain:
        return False
    for candidate in candidates:
        candidate = candidate.lower().lstrip('@')
        if domain == candidate or domain.endswith('.' + candidate):
            return True
    return False


def is_service_email(address: str, service_domain: str) -> bool:
    """
    Check if an address belongs to the platform itself (not a person).

    Only system mailboxes on the service domain count; agent addresses do not.
    """
    normalized = normalize_address(address)
    domain = address_domain(normalized)
    if domain == 'system.internal':
        return True
    if domain != service_domain.lower():
        return False
    local_part = normalized.split('@', 1)[0]
    return local_part.startswith(SYSTEM_LOCAL_PREFIXES)


def is_reply_subject(subject: str) -> bool:
    """Check if a subject line marks a reply or forward."""
    lowered = (subject or '').strip().lower()
    return lowered.startswith(REPLY_PREFIXES)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Unparseable message date '{value}', using current time")
    return datetime.now(timezone.utc)


def message_from_payload(payload: Dict[str, Any]) -> Message:
    """
    Build a Message from a normalized ingestion payload.

    Args:
        payload: Dict with messageId, subject, from, to, cc, bcc, body, date
                 and optional inReplyTo, references, threadId

    Returns:
        Message: Immutable normalized message

    Raises:
        ValueError: If the payload has no sender or no recipients
    """
    if not isinstance(payload, dict):
        raise ValueError("Message payload must be a JSON object")

    sender = normalize_address(payload.get('from') or payload.get('sender'))
    if not sender:
        raise ValueError("Message payload missing 'from'")

    to = normalize_addresses(payload.get('to'))
    cc = normalize_addresses(payload.get('cc'))
    bcc = normalize_addresses(payload.get('bcc'))
    if not (to or cc or bcc):
        raise ValueError("Message payload has no recipients")

    references = payload.get('references') or ()
    if isinstance(references, str):
        references = references.split()

    return Message(
        message_id=str(payload.get('messageId') or payload.get('message_id') or ''),
        subject=payload.get('subject') or 'No Subject',
        sender=sender,
        to=to,
        cc=cc,
        bcc=bcc,
        body=payload.get('body') or '',
        received_at=_parse_timestamp(payload.get('date')),
        in_reply_to=payload.get('inReplyTo') or None,
        references=tuple(references),
        thread_id=payload.get('threadId') or None
    )
