"""
Recipient resolution and visibility classification.

Addresses follow two shapes on the service domain:
- <agentType>+<identifier>@domain  tenant-scoped agent instance
- <agentType>@domain               shared inbox, tenant resolved downstream

Resolution is deterministic and fails closed: anything ambiguous or
unrecognized becomes a ResolutionFailure, never a guessed tenant.
"""

import logging
import os
import re
from typing import Iterable, Optional, Union

from .models import Message, ResolutionFailure, ResolvedRecipient, VisibilityContext
from services import email as email_service

logger = logging.getLogger(__name__)

SERVICE_DOMAIN = os.environ.get('SERVICE_DOMAIN', 'inboxleap.com')
DEFAULT_AGENT_TYPES = tuple(
    a.strip().lower()
    for a in os.environ.get('AGENT_TYPES', 'todo,alex,faq,polly,t5t').split(',')
    if a.strip()
)

# Trailing identifier segments treated as an instance name ("acme-sales")
INSTANCE_NAMES = frozenset(('sales', 'support', 'primary', 'main', 'dev', 'prod', 'test'))


class RecipientResolver:
    """
    Resolves recipient addresses to a unique agent instance.
    """

    def __init__(
        self,
        service_domain: str = SERVICE_DOMAIN,
        agent_types: Iterable[str] = DEFAULT_AGENT_TYPES
    ):
        self.service_domain = service_domain.lower()
        self.agent_types = tuple(agent_types)
        agents = '|'.join(re.escape(a) for a in self.agent_types)
        domain = re.escape(self.service_domain)
        self._pattern = re.compile(rf'^({agents})(?:\+([a-z0-9\-]+))?@{domain}$')

    def parse_address(self, address: str) -> Optional[ResolvedRecipient]:
        """
        Parse a single address.

        Returns:
            ResolvedRecipient, or None if the address is not an agent address

        Example:
            >>> RecipientResolver('inboxleap.com').parse_address('t5t+acme-sales@inboxleap.com')
            ResolvedRecipient(agent_type='t5t', tenant_id='acme', instance_name='sales', ...)
        """
        normalized = email_service.normalize_address(address)
        match = self._pattern.match(normalized)
        if not match:
            return None

        agent_type, identifier = match.group(1), match.group(2)
        if identifier is None:
            return ResolvedRecipient(agent_type, None, None, normalized)

        identifier = identifier.strip('-')
        if not identifier:
            return None

        tenant_id, instance_name = identifier, None
        parts = identifier.split('-')
        if len(parts) > 1 and parts[-1] in INSTANCE_NAMES:
            tenant_id = '-'.join(parts[:-1])
            instance_name = parts[-1]

        return ResolvedRecipient(agent_type, tenant_id, instance_name, normalized)

    def resolve(self, message: Message) -> Union[ResolvedRecipient, ResolutionFailure]:
        """
        Resolve a message to exactly one agent instance.

        Tenant-scoped addresses win over shared inboxes. Two distinct
        targets of the same kind make the message ambiguous.
        """
        recipients = message.all_recipients
        tenant_matches = []
        shared_matches = []

        for address in recipients:
            resolved = self.parse_address(address)
            if resolved is None:
                continue
            target = tenant_matches if not resolved.is_shared_inbox else shared_matches
            if all(self._target(r) != self._target(resolved) for r in target):
                target.append(resolved)

        if len(tenant_matches) == 1:
            return tenant_matches[0]
        if len(tenant_matches) > 1:
            targets = ', '.join(r.address for r in tenant_matches)
            return self._fail(message, f"Ambiguous tenant recipients: {targets}")

        if len(shared_matches) == 1:
            return shared_matches[0]
        if len(shared_matches) > 1:
            targets = ', '.join(r.address for r in shared_matches)
            return self._fail(message, f"Ambiguous shared inbox recipients: {targets}")

        return self._fail(message, "No agent address among recipients")

    @staticmethod
    def _target(resolved: ResolvedRecipient):
        return (resolved.agent_type, resolved.tenant_id, resolved.instance_name)

    def _fail(self, message: Message, reason: str) -> ResolutionFailure:
        logger.warning(f"Unroutable message {message.message_id} from {message.sender}: {reason}")
        return ResolutionFailure(reason=reason, recipients=message.all_recipients)


def derive_visibility(message: Message, agent_address: str) -> VisibilityContext:
    """
    Derive To/Cc/Bcc disclosure semantics for the agent address.

    An agent that received the message without appearing in To or Cc was
    blind-copied.
    """
    address = email_service.normalize_address(agent_address)
    is_to = address in message.to
    is_cc = not is_to and address in message.cc
    return VisibilityContext(
        is_to=is_to,
        is_cc=is_cc,
        is_bcc=not (is_to or is_cc),
        recipients=message.to + message.cc,
        sender=message.sender
    )
