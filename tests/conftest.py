"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('AGENT_RUNTIME_ARN', 'arn:aws:bedrock-agentcore:us-west-2:123456789012:runtime/test-agent-ABC123')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-west-2')
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'INFO')
os.environ.setdefault('SERVICE_DOMAIN', 'inboxleap.com')

from domain.models import Message  # noqa: E402


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_message():
    """Factory for normalized messages."""
    def _make(
        sender='alice@acme.com',
        to=('t5t+acme@inboxleap.com',),
        cc=(),
        bcc=(),
        subject='Weekly update',
        body='1. Shipped the billing migration\n2. Hiring two engineers',
        message_id='msg-1',
        **kwargs
    ):
        return Message(
            message_id=message_id,
            subject=subject,
            sender=sender,
            to=tuple(to),
            cc=tuple(cc),
            bcc=tuple(bcc),
            body=body,
            received_at=kwargs.pop('received_at', datetime(2025, 3, 5, 9, 0, tzinfo=timezone.utc)),
            **kwargs
        )
    return _make
