"""
Admin boundary.

Plain functions callable by an external admin surface. Each returns an
AdminResult; none raises. Updates are validated before they touch the
engine, and destructive or policy-changing calls default to deny when the
agent or policy is unknown.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .models import Message, VisibilityContext
from .recipients import derive_visibility
from .report_cache import ReportCache
from .security import SecurityPolicyEngine
from .security_config import AgentSecurityConfig
from services import email as email_service

logger = logging.getLogger(__name__)


@dataclass
class AdminResult:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


def get_security_overview(engine: SecurityPolicyEngine) -> AdminResult:
    return AdminResult(True, 'Security overview', engine.get_security_stats())


def get_agent_config(engine: SecurityPolicyEngine, agent: str) -> AdminResult:
    config = engine.get_agent_config(agent)
    if config is None:
        return AdminResult(False, f"No security config for agent '{agent}' (default allow applies)")
    return AdminResult(True, f"Security config for '{agent}'", config.to_dict())


async def update_agent_config(
    engine: SecurityPolicyEngine,
    agent: str,
    data: Dict[str, Any],
    store=None
) -> AdminResult:
    """
    Replace an agent's security config from an admin blob.

    The blob is validated first; referenced policies must be registered.
    The stored config is persisted when a store is given.
    """
    try:
        config = AgentSecurityConfig.from_dict(data, agent_name=agent)
    except ConfigurationError as e:
        logger.warning(f"Rejected config update for {agent}: {e}")
        return AdminResult(False, f"Invalid configuration: {e}")

    unknown = [p for p in config.policies if engine.get_policy(p) is None]
    if unknown:
        return AdminResult(False, f"Unknown policies: {', '.join(unknown)}")

    if store is not None:
        try:
            await store.save_agent_config(config.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist config for {agent}: {e}", exc_info=True)
            return AdminResult(False, 'Failed to persist configuration')

    engine.set_agent_config(config)
    return AdminResult(True, f"Updated security config for '{config.agent_name}'", config.to_dict())


async def update_agent_policies(
    engine: SecurityPolicyEngine,
    agent: str,
    policies: List[str],
    store=None
) -> AdminResult:
    """
    Replace an agent's policy list, keeping the rest of its config.

    Duplicate names are dropped. The new config is persisted before it is
    applied when a store is given, so it survives a cold start.
    """
    current = engine.get_agent_config(agent)
    if current is None:
        return AdminResult(False, f"Unknown agent '{agent}'")
    if isinstance(policies, str) or not all(isinstance(p, str) for p in policies):
        return AdminResult(False, 'Policies must be a list of policy names')

    config = current.replace(policies=list(policies))
    unknown = [p for p in config.policies if engine.get_policy(p) is None]
    if unknown:
        return AdminResult(False, f"Unknown policies: {', '.join(unknown)}")

    if store is not None:
        try:
            await store.save_agent_config(config.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist policies for {agent}: {e}", exc_info=True)
            return AdminResult(False, 'Failed to persist configuration')

    engine.set_agent_config(config)
    return AdminResult(True, f"Updated policies for '{agent}'", {'policies': list(config.policies)})


async def dry_run_security_validation(
    engine: SecurityPolicyEngine,
    agent: str,
    sender: str,
    subject: str = 'Security test',
    body: str = '',
    agent_address: Optional[str] = None
) -> AdminResult:
    """
    Dry-run the agent's policy chain for a synthetic message.

    Counts toward the sender's rate limit like a real request.
    """
    address = agent_address or f"{agent}@example.invalid"
    message = Message(
        message_id='admin-security-test',
        subject=subject,
        sender=email_service.normalize_address(sender),
        to=(email_service.normalize_address(address),),
        body=body
    )
    context: VisibilityContext = derive_visibility(message, address)
    result = await engine.validate_request(message, context, agent)

    data = {
        'allowed': result.allowed,
        'reason': result.reason,
        'quarantine': result.quarantine,
        'policy': result.policy_name,
        'metadata': dict(result.metadata)
    }
    if result.rate_limit is not None:
        data['rate_limit'] = {
            'requests_allowed': result.rate_limit.requests_allowed,
            'current_count': result.rate_limit.current_count,
            'reset_at': result.rate_limit.reset_at
        }
    return AdminResult(True, 'Allowed' if result.allowed else f"Blocked: {result.reason}", data)


def invalidate_reports(cache: ReportCache, agent_identifier: str, period: Optional[str] = None) -> AdminResult:
    if not agent_identifier:
        return AdminResult(False, 'agent_identifier is required')
    removed = cache.invalidate_all(agent_identifier, period)
    return AdminResult(True, f"Invalidated {removed} report(s)", {'removed': removed})


def get_queue_status(queue) -> AdminResult:
    return AdminResult(True, 'Queue status', queue.stats())


def get_cache_status(cache: ReportCache) -> AdminResult:
    return AdminResult(True, 'Cache status', cache.stats())
