"""
Data models for the email agent routing domain.

These type-safe data structures define clear contracts between components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Message:
    """
    Normalized inbound email. Immutable once ingested.

    Attributes:
        message_id: Unique message identifier
        subject: Subject line
        sender: Normalized sender address
        to: Normalized To recipients
        cc: Normalized Cc recipients
        bcc: Normalized Bcc recipients
        body: Plain text body
        received_at: When the message was received (timezone-aware)
        in_reply_to: Message-ID this message replies to
        references: Thread references
        thread_id: Thread identifier from the mail collaborator
    """
    message_id: str
    subject: str
    sender: str
    to: Tuple[str, ...] = ()
    cc: Tuple[str, ...] = ()
    bcc: Tuple[str, ...] = ()
    body: str = ""
    received_at: Optional[datetime] = None
    in_reply_to: Optional[str] = None
    references: Tuple[str, ...] = ()
    thread_id: Optional[str] = None

    @property
    def all_recipients(self) -> Tuple[str, ...]:
        """To, then Cc, then Bcc."""
        return self.to + self.cc + self.bcc

    @property
    def is_followup(self) -> bool:
        """True when the message continues an existing thread."""
        return bool(self.in_reply_to or self.references)


@dataclass(frozen=True)
class VisibilityContext:
    """Disclosure semantics of a message from the agent's point of view."""
    is_to: bool
    is_cc: bool
    is_bcc: bool
    recipients: Tuple[str, ...]
    sender: str


@dataclass(frozen=True)
class ResolvedRecipient:
    """
    Result of resolving a recipient address to an agent instance.

    Attributes:
        agent_type: Agent vocabulary (e.g. "t5t", "faq")
        tenant_id: Tenant identifier, None for a shared inbox
        instance_name: Optional named instance within the tenant
        address: The recipient address that matched
    """
    agent_type: str
    tenant_id: Optional[str]
    instance_name: Optional[str]
    address: str

    @property
    def is_shared_inbox(self) -> bool:
        return self.tenant_id is None

    @property
    def agent_identifier(self) -> str:
        """Stable identifier for the agent instance, used in cache keys."""
        if self.tenant_id is None:
            return self.agent_type
        if self.instance_name:
            return f"{self.tenant_id}-{self.instance_name}"
        return self.tenant_id

    def with_tenant(self, tenant_id: str) -> 'ResolvedRecipient':
        return ResolvedRecipient(
            agent_type=self.agent_type,
            tenant_id=tenant_id,
            instance_name=self.instance_name,
            address=self.address
        )


@dataclass(frozen=True)
class ResolutionFailure:
    """An unroutable message. Dropped and logged, never guessed."""
    reason: str
    recipients: Tuple[str, ...] = ()


@dataclass
class RateLimitInfo:
    requests_allowed: int
    window_seconds: int
    current_count: int
    reset_at: float


@dataclass
class ValidationResult:
    """
    The single security decision propagated to callers.

    A denial always carries a reason.
    """
    allowed: bool
    reason: Optional[str] = None
    quarantine: bool = False
    rate_limit: Optional[RateLimitInfo] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    policy_name: Optional[str] = None

    def __post_init__(self):
        if not self.allowed and not self.reason:
            self.reason = "Request blocked by security policy"

    @classmethod
    def allow(cls) -> 'ValidationResult':
        return cls(allowed=True)


@dataclass
class CommandResult:
    """
    Outcome of an agent command.

    Attributes:
        success: Whether the command ran and succeeded
        message: Human-readable summary (safe to show to the sender)
        data: Command-specific payload
        security_block: True when a security policy rejected the request
        quarantine: True when the rejected message is held for review
        rate_limit: Rate limit details for rate-limited rejections
        follow_up_required: Whether the agent expects a follow-up
    """
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    security_block: bool = False
    quarantine: bool = False
    rate_limit: Optional[RateLimitInfo] = None
    follow_up_required: bool = False


class ProcessingStatus(Enum):
    """Terminal states of the ingestion pipeline."""
    PROCESSED = "processed"
    REJECTED = "rejected"
    DROPPED_UNROUTABLE = "dropped_unroutable"
    FAILED = "failed"


@dataclass
class ProcessingResult:
    """
    Result of email processing operation.

    This explicit result type makes success/failure handling clear
    and prevents exceptions from being used for control flow.

    Attributes:
        success: Whether processing succeeded
        message_id: Message identifier
        status: Terminal pipeline state
        agent: Resolved agent type (if resolution succeeded)
        tenant_id: Resolved tenant (if resolution succeeded)
        command_result: Agent command outcome (if dispatched)
        reply_text: Best-effort reply to the sender, None means silence
        error_message: Error description (if processing failed)
    """
    success: bool
    message_id: str
    status: ProcessingStatus = ProcessingStatus.PROCESSED
    agent: Optional[str] = None
    tenant_id: Optional[str] = None
    command_result: Optional[CommandResult] = None
    reply_text: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def should_delete_message(self) -> bool:
        """Always True - delete all messages to prevent infinite retries."""
        return True

    def __repr__(self) -> str:
        """Human-readable representation for logging."""
        if self.success:
            return f"ProcessingResult(success=True, message_id={self.message_id}, status={self.status.value})"
        else:
            return (
                f"ProcessingResult(success=False, message_id={self.message_id}, "
                f"status={self.status.value}, error={self.error_message})"
            )


class Priority(Enum):
    """Analysis priority tiers. Lower rank is processed first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


@dataclass(order=True)
class QueuedMessage:
    """
    Message waiting for batch analysis.

    Ordering is (priority rank, sequence) so the heap yields strict
    priority order and FIFO within a tier.
    """
    sort_key: Tuple[int, int] = field(init=False, repr=False)
    id: str = field(compare=False)
    payload: Message = field(compare=False)
    organization_id: str = field(compare=False)
    priority: Priority = field(compare=False)
    enqueued_at: float = field(compare=False)
    sequence: int = field(compare=False, default=0)
    attempts: int = field(compare=False, default=0)

    def __post_init__(self):
        self.sort_key = (self.priority.rank, self.sequence)


@dataclass
class AnalysisOutcome:
    """Per-item result of batch analysis."""
    item_id: str
    organization_id: str
    success: bool
    insights: List[Dict[str, Any]] = field(default_factory=list)
    source: str = "provider"
    error: Optional[str] = None
