"""
Organizational hierarchy enrichment.

Extracts department and reporting-line hints from inbound messages and
merges them into the tenant's HierarchyRecord. Merging is additive and
idempotent: reprocessing the same message never duplicates a department
member or an (employee, manager) relationship.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .models import Message
from services import email as email_service

logger = logging.getLogger(__name__)

CC_MANAGER_CONFIDENCE = 0.6
REPORTS_TO_CONFIDENCE = 0.9

# Canonical department name -> accepted variations
DEPARTMENT_ALIASES: Dict[str, Tuple[str, ...]] = {
    'Engineering': ('eng', 'engineering', 'tech', 'technology', 'development', 'dev', 'software'),
    'Marketing': ('marketing', 'mkt', 'mrkt', 'brand', 'promotion', 'advertising'),
    'Sales': ('sales', 'selling', 'revenue', 'business development', 'biz dev', 'bd'),
    'HR': ('hr', 'human resources', 'people', 'talent', 'recruiting', 'recruitment'),
    'Finance': ('finance', 'fin', 'accounting', 'acct', 'treasury', 'financial'),
    'Operations': ('ops', 'operations', 'operational', 'logistics', 'supply chain'),
    'Product': ('product', 'pm', 'product management', 'product strategy'),
    'Design': ('design', 'ui', 'ux', 'creative', 'visual', 'user experience'),
    'Legal': ('legal', 'compliance', 'regulatory', 'contracts', 'law'),
    'Executive': ('exec', 'executive', 'leadership', 'c-suite', 'management'),
    'Customer Success': ('cs', 'customer success', 'support', 'customer support', 'help desk'),
    'QA': ('qa', 'quality', 'testing', 'qc', 'quality control', 'quality assurance'),
}

_BODY_TAG = re.compile(r'^\s*(?:department|dept|team)\s*:\s*(.+?)\s*$', re.IGNORECASE | re.MULTILINE)
_SUBJECT_MARKER = re.compile(r'\[([A-Za-z][A-Za-z &]{0,40})\]')
_SUBJECT_PREFIX = re.compile(r'^\s*([A-Za-z][A-Za-z &]{0,40}?)\s+[-–—]\s+')
_REPORTS_TO = re.compile(r'\breports?\s+to\s*:?\s*([^\s<>,;]+@[^\s<>,;]+)', re.IGNORECASE)


def normalize_department(value: str) -> Optional[str]:
    """
    Map a department spelling to its canonical name.

    Returns:
        Canonical name, or None if the value is not a known department

    Example:
        >>> normalize_department('eng')
        'Engineering'
    """
    cleaned = re.sub(r'\s+', ' ', (value or '').strip().lower())
    if not cleaned:
        return None
    for canonical, variations in DEPARTMENT_ALIASES.items():
        if cleaned == canonical.lower() or cleaned in variations:
            return canonical
    return None


def _department_from_text(value: str, accept_unknown: bool) -> Optional[str]:
    canonical = normalize_department(value)
    if canonical:
        return canonical
    if not accept_unknown:
        return None
    cleaned = re.sub(r'[^A-Za-z &]', '', value).strip()
    return cleaned.title() if cleaned else None


@dataclass
class Department:
    name: str
    members: List[str] = field(default_factory=list)
    last_seen: Optional[datetime] = None
    source: str = 'tag'


@dataclass
class Relationship:
    """Reporting line. Unique per (employee, manager)."""
    employee: str
    manager: str
    confidence: float
    last_seen: Optional[datetime] = None
    source: str = 'cc_chain'

    @property
    def key(self) -> Tuple[str, str]:
        return (self.employee, self.manager)


@dataclass
class HierarchyRecord:
    """
    Per-tenant organizational structure learned from email.

    Attributes:
        departments: Departments keyed by lowercased name
        relationships: Reporting lines, unique by (employee, manager)
        last_analyzed: When a message was last merged in
    """
    departments: Dict[str, Department] = field(default_factory=dict)
    relationships: List[Relationship] = field(default_factory=list)
    last_analyzed: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        def ts(value):
            return value.isoformat() if value else None

        return {
            'departments': {
                key: {
                    'name': d.name,
                    'members': list(d.members),
                    'last_seen': ts(d.last_seen),
                    'source': d.source
                }
                for key, d in self.departments.items()
            },
            'relationships': [
                {
                    'employee': r.employee,
                    'manager': r.manager,
                    'confidence': r.confidence,
                    'last_seen': ts(r.last_seen),
                    'source': r.source
                }
                for r in self.relationships
            ],
            'last_analyzed': ts(self.last_analyzed)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HierarchyRecord':
        def parse(value):
            return datetime.fromisoformat(value) if value else None

        departments = {
            key: Department(
                name=d['name'],
                members=list(d.get('members', [])),
                last_seen=parse(d.get('last_seen')),
                source=d.get('source', 'tag')
            )
            for key, d in (data.get('departments') or {}).items()
        }
        relationships = [
            Relationship(
                employee=r['employee'],
                manager=r['manager'],
                confidence=float(r['confidence']),
                last_seen=parse(r.get('last_seen')),
                source=r.get('source', 'cc_chain')
            )
            for r in data.get('relationships') or []
        ]
        return cls(departments, relationships, parse(data.get('last_analyzed')))


@dataclass
class HierarchyHints:
    """Signals extracted from one message."""
    member: str
    departments: List[Tuple[str, str]] = field(default_factory=list)  # (name, source)
    relationships: List[Relationship] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.departments and not self.relationships


def extract_hierarchy_hints(
    message: Message,
    service_domain: str = 'inboxleap.com'
) -> HierarchyHints:
    """
    Extract department and relationship hints from a message.

    Sources, strongest first: "reports to <addr>" lines, explicit body tags
    (Department:, Dept:, Team:), bracketed subject markers ([MARKETING]), an
    explicit subject prefix (SALES - Top 5) and CC chains, where each CC'd
    person is a weak manager signal for the sender.
    """
    sender = message.sender
    seen_at = message.received_at or datetime.now(timezone.utc)
    hints = HierarchyHints(member=sender)

    def add_department(name: Optional[str], source: str):
        if name and name.lower() not in (d.lower() for d, _ in hints.departments):
            hints.departments.append((name, source))

    for match in _BODY_TAG.finditer(message.body or ''):
        add_department(_department_from_text(match.group(1), accept_unknown=True), 'tag')

    subject = message.subject or ''
    for match in _SUBJECT_MARKER.finditer(subject):
        add_department(_department_from_text(match.group(1), accept_unknown=match.group(1).isupper()), 'subject_marker')

    prefix = _SUBJECT_PREFIX.match(subject)
    if prefix:
        text = prefix.group(1)
        add_department(_department_from_text(text, accept_unknown=text.isupper()), 'subject_prefix')

    def is_person(address: str) -> bool:
        domain = email_service.address_domain(address)
        return (
            bool(address) and address != sender and domain != service_domain.lower()
            and not email_service.is_service_email(address, service_domain)
        )

    managers = {}
    for match in _REPORTS_TO.finditer(message.body or ''):
        manager = email_service.normalize_address(match.group(1).rstrip('.'))
        if is_person(manager):
            managers[manager] = Relationship(sender, manager, REPORTS_TO_CONFIDENCE, seen_at, 'reports_to')

    for cc in message.cc:
        if is_person(cc) and cc not in managers:
            managers[cc] = Relationship(sender, cc, CC_MANAGER_CONFIDENCE, seen_at, 'cc_chain')

    hints.relationships = list(managers.values())
    return hints


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_hierarchy(
    record: Optional[HierarchyRecord],
    hints: HierarchyHints,
    now: Optional[datetime] = None
) -> HierarchyRecord:
    """
    Merge hints into a record, returning a new record.

    Relationships keep the higher confidence; on equal confidence the most
    recent last_seen wins. Nothing is ever removed.
    """
    now = now or datetime.now(timezone.utc)
    record = record or HierarchyRecord()

    departments = {
        key: replace(dept, members=list(dept.members))
        for key, dept in record.departments.items()
    }
    for name, source in hints.departments:
        key = name.lower()
        dept = departments.get(key)
        if dept is None:
            dept = Department(name=name, members=[], last_seen=None, source=source)
            departments[key] = dept
        if hints.member and hints.member not in dept.members:
            dept.members.append(hints.member)
        dept.last_seen = _later(dept.last_seen, now)

    relationships = [replace(r) for r in record.relationships]
    index = {r.key: i for i, r in enumerate(relationships)}
    for incoming in hints.relationships:
        i = index.get(incoming.key)
        if i is None:
            index[incoming.key] = len(relationships)
            relationships.append(replace(incoming))
            continue
        existing = relationships[i]
        if incoming.confidence > existing.confidence:
            relationships[i] = replace(incoming, last_seen=_later(existing.last_seen, incoming.last_seen))
        elif incoming.confidence == existing.confidence:
            existing.last_seen = _later(existing.last_seen, incoming.last_seen)

    return HierarchyRecord(
        departments=departments,
        relationships=relationships,
        last_analyzed=_later(record.last_analyzed, now)
    )


class HierarchyEnricher:
    """
    Load, merge and save a tenant's hierarchy. Best-effort: errors are
    logged and never raised to the ingestion path.
    """

    def __init__(self, store, service_domain: str = 'inboxleap.com'):
        self.store = store
        self.service_domain = service_domain

    async def enrich(self, tenant_id: str, message: Message) -> Optional[HierarchyRecord]:
        try:
            hints = extract_hierarchy_hints(message, self.service_domain)
            if hints.is_empty:
                logger.debug(f"No hierarchy hints in message {message.message_id}")
                return None

            current = await self.store.get_hierarchy(tenant_id)
            merged = merge_hierarchy(current, hints)
            await self.store.save_hierarchy(tenant_id, merged)

            logger.info(
                f"Hierarchy updated for {tenant_id}: "
                f"{len(hints.departments)} department hint(s), "
                f"{len(hints.relationships)} relationship hint(s)"
            )
            return merged
        except Exception as e:
            logger.error(f"Hierarchy enrichment failed for {tenant_id}: {e}", exc_info=True)
            return None
