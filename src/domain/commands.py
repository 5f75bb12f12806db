"""
Intelligence agent command (t5t / polly).

A submission is enriched into the tenant hierarchy, queued for batch
analysis and acknowledged right away; the tenant's current-period reports
are invalidated so the next read rebuilds. A message whose subject starts
with "report" or "summary" is answered from the report cache instead.
"""

import logging
import re
from typing import Optional

from .dispatcher import AgentCommand
from .models import CommandResult, Message, ResolvedRecipient, VisibilityContext
from services.signals import week_key

logger = logging.getLogger(__name__)

REPORT_REQUEST = re.compile(r'^\s*(?:report|summary)\b', re.IGNORECASE)


def format_report(report: dict) -> str:
    lines = [f"Team intelligence for {report.get('period')}:"]
    for index, item in enumerate(report.get('top_items') or report.get('items') or [], start=1):
        lines.append(f"{index}. {item}")
    if report.get('urgent_items'):
        lines.append(f"Urgent items: {len(report['urgent_items'])}")
    if report.get('top_topics'):
        lines.append(f"Top topics: {', '.join(report['top_topics'][:5])}")
    if report.get('data_source_confidence'):
        lines.append(f"Confidence: {report['data_source_confidence']} ({report.get('total_insights', 0)} insights)")
    return '\n'.join(lines)


class IntelligenceCommand(AgentCommand):
    """
    Args:
        queue: BatchAnalysisQueue for submissions
        enricher: HierarchyEnricher for the tenant's org structure
        reports: ReportService serving and invalidating reports
        store: Store receiving raw submissions (optional)
        recipient: Resolved tenant recipient; set through for_recipient()
    """
    command_keyword = 't5t'
    description = 'Collects top-5 updates and builds team intelligence reports'

    def __init__(self, queue, enricher, reports, store=None, recipient: Optional[ResolvedRecipient] = None):
        self.queue = queue
        self.enricher = enricher
        self.reports = reports
        self.store = store
        self.recipient = recipient

    def for_recipient(self, recipient: ResolvedRecipient) -> 'IntelligenceCommand':
        return IntelligenceCommand(self.queue, self.enricher, self.reports, self.store, recipient)

    async def process(self, message: Message, context: VisibilityContext) -> CommandResult:
        if self.recipient is None or self.recipient.tenant_id is None:
            return CommandResult(success=False, message="We could not determine your organization.")

        organization_id = self.recipient.agent_identifier
        period = week_key(message.received_at)

        if REPORT_REQUEST.match(message.subject or ''):
            return await self._answer_report(organization_id, period)

        await self.enricher.enrich(self.recipient.tenant_id, message)

        if self.store is not None:
            try:
                await self.store.save_submission(organization_id, {
                    'message_id': message.message_id,
                    'sender': message.sender,
                    'subject': message.subject,
                    'period': period,
                    'visibility': 'bcc' if context.is_bcc else ('cc' if context.is_cc else 'to')
                })
            except Exception as e:
                logger.error(f"Failed to save submission {message.message_id}: {e}", exc_info=True)

        item = self.queue.queue_message(message, organization_id)
        invalidated = self.reports.cache.invalidate_all(organization_id, period)
        logger.info(f"Submission {message.message_id} queued for {organization_id}; invalidated {invalidated} report(s)")

        return CommandResult(
            success=True,
            message="Thanks! Your update was received and will be included in this week's report.",
            data={
                'organization_id': organization_id,
                'queued_id': item.id,
                'priority': item.priority.value,
                'period': period
            }
        )

    async def _answer_report(self, organization_id: str, period: str) -> CommandResult:
        result = await self.reports.get_report(organization_id, period, 'comprehensive')
        if not result.success:
            return CommandResult(
                success=False,
                message="Your report is not ready yet. Please try again in a few minutes.",
                data={'source': result.source}
            )
        return CommandResult(
            success=True,
            message=format_report(result.data),
            data={'report': result.data, 'is_stale': result.is_stale, 'source': result.source}
        )
