"""
Security policy engine.

Every inbound message is evaluated against the ordered chain of policies
configured for its agent before any business logic runs:

1. Look up the agent's AgentSecurityConfig (none configured => allow)
2. Keep the configured policies whose should_apply() is true
3. Sort by descending priority, ties by registration order
4. Evaluate in order; the first denial short-circuits
5. All pass => allow

A policy that raises is treated as a quarantining denial. A security check
never fails open.
"""

import logging
import re
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .models import Message, RateLimitInfo, ValidationResult, VisibilityContext
from .security_config import AgentSecurityConfig, default_agent_configs
from services import email as email_service

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 3600
RECENT_BLOCKS_LIMIT = 100

# Expired rate-limit windows are swept once the counter map grows past the
# threshold, at most once per interval
RATE_LIMIT_SWEEP_THRESHOLD = 1000
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = 60


class SecurityPolicy:
    """
    Base class for pluggable security policies.

    Subclasses set name, description and priority (higher runs first) and
    implement should_apply() and validate(). Policies may keep internal
    state such as counters.
    """
    name = 'base'
    description = ''
    priority = 0

    async def should_apply(
        self,
        message: Message,
        context: VisibilityContext,
        agent: str,
        config: AgentSecurityConfig
    ) -> bool:
        return True

    async def validate(
        self,
        message: Message,
        context: VisibilityContext,
        agent: str,
        config: AgentSecurityConfig
    ) -> ValidationResult:
        raise NotImplementedError("Must implement validate")


class RateLimitPolicy(SecurityPolicy):
    """Fixed-window request counter keyed by (sender, agent)."""
    name = 'rate-limit'
    description = 'Limits requests per time window'
    priority = 100

    def __init__(
        self,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = RATE_LIMIT_SWEEP_THRESHOLD
    ):
        self.window_seconds = window_seconds
        self.clock = clock
        self.sweep_threshold = sweep_threshold
        self._last_sweep = float('-inf')
        # (sender, agent) -> [count, reset_at]
        self._counters: Dict[Tuple[str, str], List[float]] = {}

    async def validate(self, message, context, agent, config) -> ValidationResult:
        max_requests = config.max_requests_per_hour
        key = (message.sender, agent)
        now = self.clock()

        counter = self._counters.get(key)
        if counter is None or now > counter[1]:
            if (counter is None and len(self._counters) >= self.sweep_threshold
                    and now - self._last_sweep >= RATE_LIMIT_SWEEP_INTERVAL_SECONDS):
                self._last_sweep = now
                self.prune(now)
            counter = [0, now + self.window_seconds]
            self._counters[key] = counter

        counter[0] += 1
        count, reset_at = int(counter[0]), counter[1]

        info = RateLimitInfo(
            requests_allowed=max_requests,
            window_seconds=self.window_seconds,
            current_count=count,
            reset_at=reset_at
        )
        if count <= max_requests:
            return ValidationResult(allowed=True, rate_limit=info)

        return ValidationResult(
            allowed=False,
            reason=f"Rate limit exceeded: {count}/{max_requests} requests per hour",
            rate_limit=info
        )

    def prune(self, now: Optional[float] = None) -> int:
        """Drop windows that have already reset. Returns how many were removed."""
        now = self.clock() if now is None else now
        expired = [key for key, (_, reset_at) in self._counters.items() if now > reset_at]
        for key in expired:
            del self._counters[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate-limit window(s)")
        return len(expired)

    def reset(self, sender: str = None, agent: str = None) -> None:
        """Clear counters, optionally only those matching sender and/or agent."""
        for key in list(self._counters):
            if (sender is None or key[0] == sender) and (agent is None or key[1] == agent):
                del self._counters[key]


class TrustRelationshipPolicy(SecurityPolicy):
    """
    Requires an established trust edge between sender and agent.

    Missing trust quarantines for human review instead of dropping.
    """
    name = 'trust-relationship'
    description = 'Validates trust relationships between users'
    priority = 200

    def __init__(self, trust_directory):
        self.trust_directory = trust_directory

    async def should_apply(self, message, context, agent, config) -> bool:
        return config.require_trust

    async def validate(self, message, context, agent, config) -> ValidationResult:
        if await self.trust_directory.has_trust(message.sender, agent):
            return ValidationResult.allow()
        return ValidationResult(
            allowed=False,
            reason='No trust relationship found. Please establish trust first.',
            quarantine=True
        )


class DomainWhitelistPolicy(SecurityPolicy):
    name = 'domain-whitelist'
    description = 'Allows only whitelisted domains'
    priority = 150

    async def should_apply(self, message, context, agent, config) -> bool:
        return len(config.trusted_domains) > 0

    async def validate(self, message, context, agent, config) -> ValidationResult:
        domain = email_service.address_domain(message.sender)
        if email_service.domain_matches(domain, config.trusted_domains):
            return ValidationResult.allow()
        return ValidationResult(
            allowed=False,
            reason=f"Domain {domain or '(none)'} not in whitelist"
        )


class DomainBlacklistPolicy(SecurityPolicy):
    """Blocks blacklisted domains. Outranks the whitelist."""
    name = 'domain-blacklist'
    description = 'Blocks blacklisted domains'
    priority = 300

    async def should_apply(self, message, context, agent, config) -> bool:
        return len(config.blocked_domains) > 0

    async def validate(self, message, context, agent, config) -> ValidationResult:
        domain = email_service.address_domain(message.sender)
        if email_service.domain_matches(domain, config.blocked_domains):
            return ValidationResult(allowed=False, reason=f"Domain {domain} is blacklisted")
        return ValidationResult.allow()


class ContentScanPolicy(SecurityPolicy):
    """
    Scans subject and body for abuse signatures.

    Only match counts are recorded; matched text never leaves this method.
    """
    name = 'content-scanning'
    description = 'Scans email content for suspicious patterns'
    priority = 75

    SUSPICIOUS_PATTERNS = (
        re.compile(r'bitcoin|cryptocurrency|crypto', re.IGNORECASE),
        re.compile(r'urgent.*transfer.*money', re.IGNORECASE | re.DOTALL),
        re.compile(r'click.*link.*verify', re.IGNORECASE | re.DOTALL),
        re.compile(r'suspended.*account', re.IGNORECASE | re.DOTALL),
        re.compile(r'wire.*transfer.*immediately', re.IGNORECASE | re.DOTALL),
    )

    async def validate(self, message, context, agent, config) -> ValidationResult:
        content = f"{message.subject} {message.body}"
        matches = sum(1 for pattern in self.SUSPICIOUS_PATTERNS if pattern.search(content))
        if matches == 0:
            return ValidationResult.allow()
        return ValidationResult(
            allowed=False,
            reason='Email flagged for suspicious content',
            quarantine=True,
            metadata={
                'matched_patterns': matches,
                'content_length': len(content)
            }
        )


class SecurityPolicyEngine:
    """
    Explicitly constructed policy registry and evaluator.

    Holds the registered policies (in registration order) and the per-agent
    configurations. Injected into the CommandDispatcher.
    """

    def __init__(self, configs: Optional[List[AgentSecurityConfig]] = None):
        self._policies: Dict[str, SecurityPolicy] = {}
        self._registration_order: Dict[str, int] = {}
        self._next_index = 0
        self._agent_configs: Dict[str, AgentSecurityConfig] = {}
        self.recent_blocks: Deque[Dict[str, Any]] = deque(maxlen=RECENT_BLOCKS_LIMIT)

        for config in configs or []:
            self.set_agent_config(config)

    def register_policy(self, policy: SecurityPolicy) -> None:
        if policy.name not in self._registration_order:
            self._registration_order[policy.name] = self._next_index
            self._next_index += 1
        self._policies[policy.name] = policy
        logger.info(f"Registered security policy: {policy.name} (priority {policy.priority})")

    def unregister_policy(self, name: str) -> bool:
        self._registration_order.pop(name, None)
        return self._policies.pop(name, None) is not None

    def get_policy(self, name: str) -> Optional[SecurityPolicy]:
        return self._policies.get(name)

    @property
    def policy_names(self) -> List[str]:
        return sorted(self._policies, key=lambda n: self._registration_order[n])

    def set_agent_config(self, config: AgentSecurityConfig) -> None:
        self._agent_configs[config.agent_name] = config
        logger.info(f"Updated security config for agent: {config.agent_name}")

    def get_agent_config(self, agent: str) -> Optional[AgentSecurityConfig]:
        return self._agent_configs.get(agent)

    def update_agent_policies(self, agent: str, policies: List[str]) -> bool:
        config = self._agent_configs.get(agent)
        if config is None:
            return False
        updated = config.replace(policies=list(policies))
        self._agent_configs[agent] = updated
        logger.info(f"Updated policies for {agent}: {', '.join(updated.policies)}")
        return True

    async def validate_request(
        self,
        message: Message,
        context: VisibilityContext,
        agent: str
    ) -> ValidationResult:
        """
        Evaluate the agent's policy chain for one message.

        Returns:
            ValidationResult: the first denial by priority, or allowed=True
        """
        config = self.get_agent_config(agent)
        if config is None:
            logger.debug(f"No security config for agent {agent}, allowing")
            return ValidationResult.allow()

        # (policy, should_apply failed); a failed should_apply still takes its
        # priority slot and denies there, so it cannot mask a higher denial
        applicable: List[Tuple[SecurityPolicy, bool]] = []
        for name in dict.fromkeys(config.policies):
            policy = self._policies.get(name)
            if policy is None:
                logger.warning(f"Agent {agent} references unknown policy '{name}', skipping")
                continue
            try:
                if await policy.should_apply(message, context, agent, config):
                    applicable.append((policy, False))
            except Exception as e:
                logger.error(f"Policy '{name}' should_apply() failed for agent {agent}: {e}", exc_info=True)
                applicable.append((policy, True))

        applicable.sort(key=lambda entry: (-entry[0].priority, self._registration_order[entry[0].name]))

        for policy, errored in applicable:
            if errored:
                result = self._fail_closed(policy.name)
            else:
                try:
                    result = await policy.validate(message, context, agent, config)
                except Exception as e:
                    logger.error(f"Policy '{policy.name}' validate() failed for agent {agent}: {e}", exc_info=True)
                    result = self._fail_closed(policy.name)

            if not result.allowed:
                result.policy_name = policy.name
                logger.warning(
                    f"Security policy '{policy.name}' blocked request from {message.sender} "
                    f"to agent {agent}: {result.reason}"
                )
                return self._record_block(message, agent, result)

        return ValidationResult.allow()

    @staticmethod
    def _fail_closed(policy_name: str) -> ValidationResult:
        return ValidationResult(
            allowed=False,
            reason='Security check could not be completed',
            quarantine=True,
            policy_name=policy_name,
            metadata={'policy_error': True}
        )

    def _record_block(self, message: Message, agent: str, result: ValidationResult) -> ValidationResult:
        self.recent_blocks.append({
            'agent': agent,
            'sender': message.sender,
            'message_id': message.message_id,
            'policy': result.policy_name,
            'reason': result.reason,
            'quarantine': result.quarantine,
            'blocked_at': time.time()
        })
        return result

    def get_security_stats(self) -> Dict[str, Any]:
        return {
            'policies': [
                {'name': p.name, 'description': p.description, 'priority': p.priority}
                for p in (self._policies[n] for n in self.policy_names)
            ],
            'agents': [
                {'name': name, 'policies': list(config.policies), 'config': config.to_dict()}
                for name, config in sorted(self._agent_configs.items())
            ],
            'recent_blocks': list(self.recent_blocks)
        }


def create_security_engine(
    trust_directory,
    configs: Optional[List[AgentSecurityConfig]] = None,
    clock: Callable[[], float] = time.time
) -> SecurityPolicyEngine:
    """
    Build an engine with the built-in policies and default agent configs.

    Args:
        trust_directory: Object with async has_trust(sender, agent)
        configs: Agent configs (defaults to default_agent_configs())
        clock: Time source for the rate limiter
    """
    engine = SecurityPolicyEngine(configs if configs is not None else default_agent_configs())
    engine.register_policy(RateLimitPolicy(clock=clock))
    engine.register_policy(TrustRelationshipPolicy(trust_directory))
    engine.register_policy(DomainWhitelistPolicy())
    engine.register_policy(DomainBlacklistPolicy())
    engine.register_policy(ContentScanPolicy())
    return engine
