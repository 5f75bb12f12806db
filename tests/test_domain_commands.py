"""
Tests for the intelligence agent command.
"""

import pytest
import sys
import os
from unittest.mock import AsyncMock, Mock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain.batch_queue import BatchAnalysisQueue
from domain.commands import IntelligenceCommand, format_report
from domain.hierarchy import HierarchyEnricher
from domain.models import ResolvedRecipient, VisibilityContext
from domain.report_cache import InsightReportBuilder, ReportCache, ReportKey, ReportService
from domain.storage import InMemoryStore

ACME = ResolvedRecipient('t5t', 'acme', None, 't5t+acme@inboxleap.com')


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def command(store, clock):
    queue = BatchAnalysisQueue(AsyncMock(), store=store, clock=clock)
    reports = ReportService(ReportCache(clock=clock), InsightReportBuilder(store, clock=clock))
    return IntelligenceCommand(queue, HierarchyEnricher(store), reports, store=store)


def _context(message, bcc=False):
    return VisibilityContext(not bcc, False, bcc, message.to, message.sender)


class TestSubmission:
    """Test submissions are enriched, queued and acknowledged."""

    @pytest.mark.asyncio
    async def test_submission_queued_and_acknowledged(self, command, store, make_message):
        message = make_message(body='Dept: eng\n1. Shipped the billing migration')

        result = await command.for_recipient(ACME).process(message, _context(message))

        assert result.success is True
        assert result.data == {
            'organization_id': 'acme',
            'queued_id': 'msg-1',
            'priority': 'medium',
            'period': '2025-W10'
        }
        assert len(command.queue) == 1
        assert store.submissions('acme')[0]['visibility'] == 'to'
        assert 'engineering' in (await store.get_hierarchy('acme')).departments

    @pytest.mark.asyncio
    async def test_submission_invalidates_current_reports(self, command, make_message):
        """Test the tenant's current-period reports are dropped on a new submission."""
        for kind in ('top5', 'comprehensive'):
            command.reports.cache.set(ReportKey('acme', '2025-W10', kind), {'period': '2025-W10'})
        command.reports.cache.set(ReportKey('acme', '2025-W09'), {'period': '2025-W09'})
        message = make_message()

        await command.for_recipient(ACME).process(message, _context(message))

        stats = command.reports.cache.stats()
        assert stats['keys'] == ['comprehensive:acme:2025-W09']

    @pytest.mark.asyncio
    async def test_instance_scoped_organization(self, command, make_message):
        recipient = ResolvedRecipient('t5t', 'acme', 'sales', 't5t+acme-sales@inboxleap.com')
        message = make_message(to=(recipient.address,))

        result = await command.for_recipient(recipient).process(message, _context(message))

        assert result.data['organization_id'] == 'acme-sales'

    @pytest.mark.asyncio
    async def test_submission_store_failure_still_queues(self, command, make_message):
        """Test a failed submission write does not block analysis."""
        command.store = Mock()
        command.store.save_submission = AsyncMock(side_effect=IOError("S3 down"))
        message = make_message()

        result = await command.for_recipient(ACME).process(message, _context(message, bcc=True))

        assert result.success is True
        assert len(command.queue) == 1

    @pytest.mark.asyncio
    async def test_without_tenant(self, command, make_message):
        message = make_message()

        result = await command.process(message, _context(message))

        assert result.success is False
        assert len(command.queue) == 0


class TestReportRequest:
    """Test report requests are answered from the cache."""

    @pytest.mark.asyncio
    async def test_report_request_builds_report(self, command, store, make_message):
        await store.save_insights('acme', '2025-W10', [
            {'text': 'Shipped billing', 'topics': ['billing'], 'sentiment': 'positive', 'urgent': False}
        ])
        message = make_message(subject='Report please', body='')

        result = await command.for_recipient(ACME).process(message, _context(message))

        assert result.success is True
        assert result.data['source'] == 'build'
        assert result.message.startswith('Team intelligence for 2025-W10:')
        assert '1. Shipped billing' in result.message
        assert len(command.queue) == 0

    @pytest.mark.asyncio
    async def test_report_not_ready(self, command, make_message):
        command.reports = Mock()
        command.reports.get_report = AsyncMock(return_value=Mock(success=False, source='pending'))
        message = make_message(subject='summary', body='')

        result = await command.for_recipient(ACME).process(message, _context(message))

        assert result.success is False
        assert result.data == {'source': 'pending'}


class TestFormatReport:
    """Test report text rendering."""

    def test_format(self):
        text = format_report({
            'period': '2025-W10',
            'top_items': ['a', 'b'],
            'urgent_items': ['b'],
            'top_topics': ['billing', 'hiring'],
            'data_source_confidence': 'low',
            'total_insights': 2
        })

        assert text.splitlines() == [
            'Team intelligence for 2025-W10:',
            '1. a',
            '2. b',
            'Urgent items: 1',
            'Top topics: billing, hiring',
            'Confidence: low (2 insights)'
        ]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
