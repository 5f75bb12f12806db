"""
Command dispatcher.

Wraps an agent's raw handlers in an ordered middleware chain built once at
construction. The security gate is always the outermost link: only an
allowed request reaches the handler, and every outcome is a CommandResult.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from .models import CommandResult, Message, VisibilityContext

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "We couldn't process your request right now. Please try again later."


class AgentCommand:
    """
    Base class for agent handlers.

    Subclasses implement process(); follow-ups default to process().
    """
    command_keyword = ''
    description = ''

    async def process(self, message: Message, context: VisibilityContext) -> CommandResult:
        raise NotImplementedError("Must implement process")

    async def handle_followup(self, message: Message, context: VisibilityContext) -> CommandResult:
        return await self.process(message, context)


@dataclass(frozen=True)
class Invocation:
    agent: str
    command: AgentCommand
    message: Message
    context: VisibilityContext
    followup: bool = False


Handler = Callable[[Invocation], Awaitable[CommandResult]]
Middleware = Callable[[Invocation, Handler], Awaitable[CommandResult]]


async def _call_handler(invocation: Invocation) -> CommandResult:
    command = invocation.command
    if invocation.followup:
        return await command.handle_followup(invocation.message, invocation.context)
    return await command.process(invocation.message, invocation.context)


async def timing_middleware(invocation: Invocation, call_next: Handler) -> CommandResult:
    """Log handler outcome and duration."""
    start_time = time.time()
    result = await call_next(invocation)
    logger.info(
        f"Agent {invocation.agent} handled {invocation.message.message_id}: "
        f"success={result.success}, execution_time={time.time() - start_time:.2f}s"
    )
    return result


class CommandDispatcher:
    """
    Decorates agent commands with the security gate and middlewares.

    Args:
        engine: SecurityPolicyEngine consulted before every handler call
        middlewares: Extra middlewares, run inside the security gate in order
    """

    def __init__(self, engine, middlewares: Sequence[Middleware] = ()):
        self.engine = engine
        self.middlewares = (self._security_gate,) + tuple(middlewares)
        self._chain = self._compose(self.middlewares)

    @staticmethod
    def _compose(middlewares: Sequence[Middleware]) -> Handler:
        handler: Handler = _call_handler
        for middleware in reversed(middlewares):
            handler = _bind(middleware, handler)
        return handler

    async def _security_gate(self, invocation: Invocation, call_next: Handler) -> CommandResult:
        validation = await self.engine.validate_request(
            invocation.message, invocation.context, invocation.agent
        )
        if not validation.allowed:
            return CommandResult(
                success=False,
                message=validation.reason,
                data={
                    'policy': validation.policy_name,
                    'metadata': dict(validation.metadata)
                },
                security_block=True,
                quarantine=validation.quarantine,
                rate_limit=validation.rate_limit
            )
        return await call_next(invocation)

    async def dispatch(self, invocation: Invocation) -> CommandResult:
        """Run the chain. Never raises."""
        try:
            return await self._chain(invocation)
        except Exception as e:
            logger.error(
                f"Agent {invocation.agent} failed on message {invocation.message.message_id}: {e}",
                exc_info=True
            )
            return CommandResult(success=False, message=GENERIC_FAILURE_MESSAGE)

    def secure(self, agent: str, command: AgentCommand) -> 'SecuredCommand':
        return SecuredCommand(self, agent, command)


def _bind(middleware: Middleware, call_next: Handler) -> Handler:
    async def handler(invocation: Invocation) -> CommandResult:
        return await middleware(invocation, call_next)
    return handler


class SecuredCommand:
    """An agent command reachable only through the dispatcher chain."""

    def __init__(self, dispatcher: CommandDispatcher, agent: str, command: AgentCommand):
        self.dispatcher = dispatcher
        self.agent = agent
        self.command = command

    @property
    def command_keyword(self) -> str:
        return self.command.command_keyword

    @property
    def description(self) -> str:
        return self.command.description

    async def process(self, message: Message, context: VisibilityContext) -> CommandResult:
        return await self.dispatcher.dispatch(Invocation(self.agent, self.command, message, context))

    async def handle_followup(self, message: Message, context: VisibilityContext) -> CommandResult:
        return await self.dispatcher.dispatch(
            Invocation(self.agent, self.command, message, context, followup=True)
        )
