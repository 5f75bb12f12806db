"""
Per-agent security configuration.

Configurations are validated when constructed, so admin updates with a bad
shape are rejected at the boundary instead of failing deep inside a policy.
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Tuple

from .errors import ConfigurationError

DEFAULT_MAX_REQUESTS_PER_HOUR = int(os.environ.get('DEFAULT_MAX_REQUESTS_PER_HOUR', '100'))

# Accepted keys in admin blobs: camelCase (admin UI) -> field name
_FIELD_ALIASES = {
    'agentName': 'agent_name',
    'policies': 'policies',
    'maxRequestsPerHour': 'max_requests_per_hour',
    'trustedDomains': 'trusted_domains',
    'blockedDomains': 'blocked_domains',
    'requireTrust': 'require_trust',
    'allowSelfService': 'allow_self_service',
    'customSettings': 'custom_settings',
}


def _normalize_domains(value: Any, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not all(isinstance(d, str) for d in value):
        raise ConfigurationError(f"{field_name} must be a list of domain strings")
    domains = []
    for domain in value:
        domain = domain.strip().lower().lstrip('@')
        if domain and domain not in domains:
            domains.append(domain)
    return tuple(domains)


@dataclass(frozen=True)
class AgentSecurityConfig:
    """
    Security configuration for one agent.

    Attributes:
        agent_name: Agent type this config applies to
        policies: Names of policies to evaluate
        max_requests_per_hour: Rate limit threshold per (sender, agent)
        trusted_domains: Whitelisted sender domains (exact or suffix)
        blocked_domains: Blacklisted sender domains (exact or suffix)
        require_trust: Require an established trust relationship
        allow_self_service: Allow interaction without an invitation
        custom_settings: Free-form settings for custom policies
    """
    agent_name: str
    policies: Tuple[str, ...]
    max_requests_per_hour: int = DEFAULT_MAX_REQUESTS_PER_HOUR
    trusted_domains: Tuple[str, ...] = ()
    blocked_domains: Tuple[str, ...] = ()
    require_trust: bool = False
    allow_self_service: bool = True
    custom_settings: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.agent_name, str) or not self.agent_name.strip():
            raise ConfigurationError("agent_name must be a non-empty string")
        object.__setattr__(self, 'agent_name', self.agent_name.strip().lower())

        if isinstance(self.policies, str) or not all(isinstance(p, str) for p in self.policies):
            raise ConfigurationError("policies must be a list of policy names")
        # Order kept; a repeated name would run its policy twice per message
        object.__setattr__(self, 'policies', tuple(dict.fromkeys(p.strip() for p in self.policies if p.strip())))

        limit = self.max_requests_per_hour
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ConfigurationError("max_requests_per_hour must be a positive integer")

        object.__setattr__(self, 'trusted_domains', _normalize_domains(self.trusted_domains, 'trusted_domains'))
        object.__setattr__(self, 'blocked_domains', _normalize_domains(self.blocked_domains, 'blocked_domains'))

        for flag in ('require_trust', 'allow_self_service'):
            if not isinstance(getattr(self, flag), bool):
                raise ConfigurationError(f"{flag} must be a boolean")

        if not isinstance(self.custom_settings, dict):
            raise ConfigurationError("custom_settings must be an object")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], agent_name: str = None) -> 'AgentSecurityConfig':
        """
        Build a config from an admin blob (camelCase or snake_case keys).

        Raises:
            ConfigurationError: If the blob has unknown keys or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Agent security config must be an object")

        kwargs = {}
        for key, value in data.items():
            name = _FIELD_ALIASES.get(key, key)
            if name not in _FIELD_ALIASES.values():
                raise ConfigurationError(f"Unknown agent security setting: {key}")
            kwargs[name] = value

        if agent_name is not None:
            kwargs['agent_name'] = agent_name
        if 'policies' not in kwargs:
            raise ConfigurationError("policies are required")

        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Invalid agent security config: {e}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['policies'] = list(self.policies)
        data['trusted_domains'] = list(self.trusted_domains)
        data['blocked_domains'] = list(self.blocked_domains)
        return data

    def replace(self, **changes) -> 'AgentSecurityConfig':
        data = self.to_dict()
        data.update(changes)
        return AgentSecurityConfig(**data)


def default_agent_configs() -> List[AgentSecurityConfig]:
    """Security configurations for the built-in agents."""
    return [
        AgentSecurityConfig(
            agent_name='todo',
            policies=('rate-limit', 'content-scanning'),
            max_requests_per_hour=50
        ),
        AgentSecurityConfig(
            agent_name='alex',
            policies=('rate-limit', 'content-scanning', 'trust-relationship'),
            max_requests_per_hour=30,
            require_trust=True,
            allow_self_service=False
        ),
        AgentSecurityConfig(
            agent_name='t5t',
            policies=('rate-limit', 'domain-whitelist', 'content-scanning'),
            max_requests_per_hour=100,
            trusted_domains=()  # configured per deployment
        ),
        AgentSecurityConfig(
            agent_name='faq',
            policies=('rate-limit', 'content-scanning'),
            max_requests_per_hour=200
        ),
    ]
