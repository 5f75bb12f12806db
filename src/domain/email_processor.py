"""
Email ingestion pipeline - routing and security gate.

This module handles the end-to-end processing of inbound agent email:
1. Parse the normalized message from the SQS record
2. Resolve recipients to exactly one agent instance
3. Disambiguate shared inboxes through the tenant directory
4. Derive To/Cc/Bcc visibility
5. Dispatch through the secured command (security gate first)
6. Decide the sender-facing reply (or silence)

All errors are caught and returned as ProcessingResult with success=False.
No exceptions propagate out of the public methods.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .batch_queue import BatchAnalysisQueue
from .commands import IntelligenceCommand
from .dispatcher import AgentCommand, CommandDispatcher, timing_middleware
from .errors import ConfigurationError
from .hierarchy import HierarchyEnricher
from .analysis import IntelligenceAnalyzer
from .models import (
    CommandResult, Message, ProcessingResult, ProcessingStatus, ResolutionFailure
)
from .recipients import RecipientResolver, derive_visibility
from .report_cache import InsightReportBuilder, ReportCache, ReportService
from .security import SecurityPolicyEngine, create_security_engine
from .security_config import AgentSecurityConfig
from .storage import Store, create_store
from services import email as email_service

logger = logging.getLogger(__name__)

INGESTION_TIMEOUT_SECONDS = float(os.environ.get('INGESTION_TIMEOUT_SECONDS', '60'))

RATE_LIMIT_REPLY = (
    "You've reached the limit of {limit} requests per hour for this agent. "
    "Please try again after {reset} UTC."
)
REJECTED_REPLY = "Your message could not be processed by this agent."
UNKNOWN_ORGANIZATION_REPLY = (
    "We could not determine your organization. Please write to your team's "
    "dedicated agent address instead."
)


def reply_for(result: CommandResult) -> Optional[str]:
    """
    Sender-facing reply for a command outcome. None means silence.

    Quarantined and blacklisted traffic gets no reply; rate-limited and
    other rejected traffic gets a short explanation without internal detail.
    """
    if result.success:
        return result.message
    if not result.security_block:
        return result.message
    if result.quarantine or result.data.get('policy') == 'domain-blacklist':
        return None
    if result.rate_limit is not None:
        reset = datetime.fromtimestamp(result.rate_limit.reset_at, tz=timezone.utc)
        return RATE_LIMIT_REPLY.format(
            limit=result.rate_limit.requests_allowed,
            reset=reset.strftime('%H:%M')
        )
    return REJECTED_REPLY


class EmailProcessor:
    """
    Routes inbound messages to secured agent commands.

    Returns ProcessingResult for explicit success/failure handling.

    Args:
        resolver: RecipientResolver for agent addresses
        dispatcher: CommandDispatcher holding the security engine
        store: Store used for shared-inbox tenant lookups
        commands: Agent type -> AgentCommand
        timeout_seconds: Hard limit for processing one message
    """

    def __init__(
        self,
        resolver: RecipientResolver,
        dispatcher: CommandDispatcher,
        store: Store,
        commands: Mapping[str, AgentCommand],
        timeout_seconds: float = INGESTION_TIMEOUT_SECONDS
    ):
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.store = store
        self.commands = dict(commands)
        self.timeout_seconds = timeout_seconds

        # Set by create_email_processor()
        self.queue: Optional[BatchAnalysisQueue] = None
        self.reports: Optional[ReportService] = None

    @property
    def engine(self) -> SecurityPolicyEngine:
        return self.dispatcher.engine

    async def process_record(self, record: Dict[str, Any]) -> ProcessingResult:
        """
        Process a single SQS record containing a normalized message.

        Returns:
            ProcessingResult with success=True or success=False (errors logged)
        """
        record_id = record.get('messageId', 'UNKNOWN')
        logger.info(f"Processing SQS message: {record_id}")

        try:
            message = self._parse_record(record)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed record {record_id}: {e}")
            return ProcessingResult(
                success=False,
                message_id=record_id,
                status=ProcessingStatus.FAILED,
                error_message=f"Malformed record: {e}"
            )

        return await self.process_message(message)

    def _parse_record(self, record: Dict[str, Any]) -> Message:
        """
        Parse the SQS body into a Message.

        Handles both direct and SNS-wrapped deliveries.

        Raises:
            ValueError: If the body is not a valid message payload
            KeyError: If the record has no body
        """
        body = json.loads(record['body'])

        if isinstance(body, dict) and body.get('Type') == 'Notification' and 'Message' in body:
            logger.info("Unwrapping SNS message")
            body = json.loads(body['Message'])

        if isinstance(body, dict) and not (body.get('messageId') or body.get('message_id')):
            body = dict(body, messageId=record.get('messageId'))

        return email_service.message_from_payload(body)

    async def process_message(self, message: Message) -> ProcessingResult:
        """Process one message under the ingestion timeout."""
        try:
            return await asyncio.wait_for(self._route(message), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Processing timed out after {self.timeout_seconds}s: {message.message_id}")
            return ProcessingResult(
                success=False,
                message_id=message.message_id,
                status=ProcessingStatus.FAILED,
                error_message=f"Timed out after {self.timeout_seconds}s"
            )
        except Exception as e:
            logger.error(f"Failed to process {message.message_id}: {e}", exc_info=True)
            return ProcessingResult(
                success=False,
                message_id=message.message_id,
                status=ProcessingStatus.FAILED,
                error_message=str(e)
            )

    async def _route(self, message: Message) -> ProcessingResult:
        resolved = self.resolver.resolve(message)
        if isinstance(resolved, ResolutionFailure):
            return self._dropped(message, resolved.reason)

        command = self.commands.get(resolved.agent_type)
        if command is None:
            return self._dropped(message, f"No command registered for agent '{resolved.agent_type}'")

        if resolved.is_shared_inbox:
            tenant_id = await self.store.find_tenant_for_sender(resolved.agent_type, message.sender)
            if tenant_id is None:
                result = self._dropped(message, f"Could not determine tenant for shared inbox {resolved.address}")
                result.agent = resolved.agent_type
                result.reply_text = self._reply(message, UNKNOWN_ORGANIZATION_REPLY)
                return result
            resolved = resolved.with_tenant(tenant_id)

        context = derive_visibility(message, resolved.address)
        if hasattr(command, 'for_recipient'):
            command = command.for_recipient(resolved)
        secured = self.dispatcher.secure(resolved.agent_type, command)

        logger.info(
            f"Routing {message.message_id} to {resolved.agent_type}/{resolved.agent_identifier} "
            f"(to={context.is_to}, cc={context.is_cc}, bcc={context.is_bcc}, followup={message.is_followup})"
        )

        if message.is_followup:
            command_result = await secured.handle_followup(message, context)
        else:
            command_result = await secured.process(message, context)

        status = ProcessingStatus.PROCESSED
        if command_result.security_block:
            status = ProcessingStatus.REJECTED

        self._log_outcome(message, resolved.agent_type, command_result)

        return ProcessingResult(
            success=command_result.success,
            message_id=message.message_id,
            status=status,
            agent=resolved.agent_type,
            tenant_id=resolved.tenant_id,
            command_result=command_result,
            reply_text=self._reply(message, reply_for(command_result)),
            error_message=None if command_result.success else command_result.message
        )

    def _reply(self, message: Message, text: Optional[str]) -> Optional[str]:
        # Never answer platform mailboxes
        if text and email_service.is_service_email(message.sender, self.resolver.service_domain):
            return None
        return text

    def _dropped(self, message: Message, reason: str) -> ProcessingResult:
        logger.warning(f"Dropping message {message.message_id} from {message.sender}: {reason}")
        return ProcessingResult(
            success=False,
            message_id=message.message_id,
            status=ProcessingStatus.DROPPED_UNROUTABLE,
            error_message=reason
        )

    def _log_outcome(self, message: Message, agent: str, result: CommandResult) -> None:
        logger.info("=" * 50)
        if result.security_block:
            logger.info("EMAIL REJECTED BY SECURITY POLICY")
            logger.info(f"Policy: {result.data.get('policy')}, quarantine={result.quarantine}")
        elif result.success:
            logger.info("EMAIL PROCESSED SUCCESSFULLY")
        else:
            logger.info("EMAIL PROCESSING FAILED")
        logger.info(f"From: {message.sender}")
        logger.info(f"Agent: {agent}")
        logger.info(f"Subject: {message.subject}")
        logger.info("=" * 50)

    async def load_persisted_configs(self) -> int:
        """
        Apply agent security configs saved through the admin boundary.

        Invalid stored configs are skipped and logged.
        """
        try:
            stored = await self.store.load_agent_configs()
        except Exception as e:
            logger.error(f"Failed to load persisted agent configs: {e}", exc_info=True)
            return 0

        loaded = 0
        for data in stored:
            try:
                self.engine.set_agent_config(AgentSecurityConfig.from_dict(data))
                loaded += 1
            except ConfigurationError as e:
                logger.error(f"Ignoring invalid stored agent config: {e}")
        return loaded


def create_email_processor(
    store: Optional[Store] = None,
    analyzer: Optional[IntelligenceAnalyzer] = None,
    resolver: Optional[RecipientResolver] = None
) -> EmailProcessor:
    """
    Compose the default object graph.

    t5t and polly are served by the intelligence command; other agent types
    resolve but have no handler in this service and are dropped.
    """
    store = store or create_store()
    resolver = resolver or RecipientResolver()
    engine = create_security_engine(trust_directory=store)
    dispatcher = CommandDispatcher(engine, middlewares=(timing_middleware,))

    cache = ReportCache()
    reports = ReportService(cache, InsightReportBuilder(store))
    queue = BatchAnalysisQueue(
        analyzer or IntelligenceAnalyzer(),
        store=store,
        on_saved=lambda organization_id, period: cache.invalidate_all(organization_id, period)
    )
    enricher = HierarchyEnricher(store, resolver.service_domain)
    intelligence = IntelligenceCommand(queue, enricher, reports, store=store)

    processor = EmailProcessor(
        resolver,
        dispatcher,
        store,
        commands={'t5t': intelligence, 'polly': intelligence}
    )
    processor.queue = queue
    processor.reports = reports
    return processor
