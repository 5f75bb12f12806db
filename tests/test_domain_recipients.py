"""
Tests for recipient resolution and visibility classification.
"""

import pytest
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain.models import ResolutionFailure, ResolvedRecipient
from domain.recipients import RecipientResolver, derive_visibility


@pytest.fixture
def resolver():
    return RecipientResolver('inboxleap.com', ('todo', 'alex', 'faq', 'polly', 't5t'))


class TestParseAddress:
    """Test single-address parsing."""

    def test_tenant_address(self, resolver):
        """Test tenant-scoped address."""
        result = resolver.parse_address('t5t+acme@inboxleap.com')

        assert result == ResolvedRecipient('t5t', 'acme', None, 't5t+acme@inboxleap.com')

    def test_tenant_address_with_instance(self, resolver):
        """Test well-known instance name is split off."""
        result = resolver.parse_address('t5t+acme-sales@inboxleap.com')

        assert result.tenant_id == 'acme'
        assert result.instance_name == 'sales'

    def test_dashed_tenant_without_instance(self, resolver):
        """Test unknown trailing segment stays part of the tenant."""
        result = resolver.parse_address('faq+big-corp@inboxleap.com')

        assert result.tenant_id == 'big-corp'
        assert result.instance_name is None

    def test_shared_inbox(self, resolver):
        result = resolver.parse_address('faq@inboxleap.com')

        assert result.is_shared_inbox is True
        assert result.agent_type == 'faq'

    def test_display_name_and_case(self, resolver):
        """Test address normalization before matching."""
        result = resolver.parse_address('Team Bot <T5T+ACME@InboxLeap.com>')

        assert result.tenant_id == 'acme'

    @pytest.mark.parametrize('address', [
        'bob@acme.com',
        'unknown@inboxleap.com',
        't5t+acme@other.com',
        't5t+acme_x@inboxleap.com',
        't5t+@inboxleap.com',
    ])
    def test_not_agent_address(self, resolver, address):
        """Test non-agent addresses are ignored."""
        assert resolver.parse_address(address) is None


class TestResolve:
    """Test message-level resolution."""

    def test_tenant_wins_over_shared(self, resolver, make_message):
        """Test tenant-scoped match beats a shared inbox."""
        message = make_message(to=('faq@inboxleap.com',), cc=('t5t+acme@inboxleap.com',))

        result = resolver.resolve(message)

        assert isinstance(result, ResolvedRecipient)
        assert result.agent_type == 't5t'
        assert result.tenant_id == 'acme'

    def test_bcc_only_agent(self, resolver, make_message):
        """Test agent found in Bcc."""
        message = make_message(to=('bob@acme.com',), bcc=('t5t+acme@inboxleap.com',))

        result = resolver.resolve(message)

        assert result.tenant_id == 'acme'

    def test_duplicate_target_is_not_ambiguous(self, resolver, make_message):
        """Test same tenant in To and Cc resolves once."""
        message = make_message(to=('t5t+acme@inboxleap.com',), cc=('T5T+ACME@inboxleap.com',))

        result = resolver.resolve(message)

        assert isinstance(result, ResolvedRecipient)

    def test_ambiguous_tenants_fail_closed(self, resolver, make_message):
        """Test two distinct tenants is a failure, never a guess."""
        message = make_message(to=('t5t+acme@inboxleap.com', 't5t+globex@inboxleap.com'))

        result = resolver.resolve(message)

        assert isinstance(result, ResolutionFailure)
        assert 'Ambiguous' in result.reason

    def test_ambiguous_shared_inboxes(self, resolver, make_message):
        message = make_message(to=('faq@inboxleap.com', 'todo@inboxleap.com'))

        result = resolver.resolve(message)

        assert isinstance(result, ResolutionFailure)

    def test_no_agent_address(self, resolver, make_message):
        """Test unroutable message."""
        message = make_message(to=('bob@acme.com',))

        result = resolver.resolve(message)

        assert isinstance(result, ResolutionFailure)
        assert result.reason == 'No agent address among recipients'
        assert result.recipients == ('bob@acme.com',)


class TestDeriveVisibility:
    """Test To/Cc/Bcc classification."""

    def test_to(self, make_message):
        message = make_message(to=('t5t+acme@inboxleap.com', 'bob@acme.com'), cc=('carol@acme.com',))

        context = derive_visibility(message, 't5t+acme@inboxleap.com')

        assert (context.is_to, context.is_cc, context.is_bcc) == (True, False, False)
        assert context.recipients == ('t5t+acme@inboxleap.com', 'bob@acme.com', 'carol@acme.com')
        assert context.sender == 'alice@acme.com'

    def test_cc(self, make_message):
        message = make_message(to=('bob@acme.com',), cc=('t5t+acme@inboxleap.com',))

        context = derive_visibility(message, 't5t+acme@inboxleap.com')

        assert (context.is_to, context.is_cc, context.is_bcc) == (False, True, False)

    def test_bcc_when_not_visible(self, make_message):
        """Test agent absent from To/Cc was blind-copied."""
        message = make_message(to=('bob@acme.com',), bcc=('t5t+acme@inboxleap.com',))

        context = derive_visibility(message, 't5t+acme@inboxleap.com')

        assert context.is_bcc is True
        assert 't5t+acme@inboxleap.com' not in context.recipients


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
