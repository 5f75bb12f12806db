"""
Bedrock AgentCore analysis provider.

Sends one redacted batch prompt to the configured agent runtime and returns
the raw completion text for IntelligenceAnalyzer.parse_response. The provider
is optional: without AGENT_RUNTIME_ARN the module imports cleanly,
is_configured() is False and callers use heuristics instead.

Usage:
    from integrations import analysis_provider

    if analysis_provider.is_configured():
        text = analysis_provider.complete(prompt, organization_id='acme')
"""

import json
import logging
import os
import re
import time
import uuid
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from domain.errors import ConfigurationError, TransientAnalysisFailure

logger = logging.getLogger(__name__)

PROVIDER_CONNECT_TIMEOUT = int(os.environ.get('PROVIDER_CONNECT_TIMEOUT', '10'))
PROVIDER_READ_TIMEOUT = int(os.environ.get('PROVIDER_READ_TIMEOUT', '120'))

# AgentCore rejects runtime session ids shorter than this
MIN_SESSION_ID_LENGTH = 33

_UNSAFE_SESSION_CHARS = re.compile(r'[^a-zA-Z0-9\-]')


class ProviderUnavailable(TransientAnalysisFailure):
    """Provider call failed; the analyzer retries once."""
    pass


def _read_agent_runtime_arn() -> Optional[str]:
    """
    Read AGENT_RUNTIME_ARN from the environment.

    Returns:
        The ARN, or None when the provider is not configured

    Raises:
        ConfigurationError: If the variable is set but is not a Bedrock ARN
    """
    arn = os.environ.get('AGENT_RUNTIME_ARN')

    if not arn:
        logger.warning("AGENT_RUNTIME_ARN not set; analysis provider disabled, heuristics only")
        return None

    if not arn.startswith('arn:aws:bedrock'):
        raise ConfigurationError(
            f"AGENT_RUNTIME_ARN has invalid format. "
            f"Expected ARN starting with 'arn:aws:bedrock', got: '{arn[:50]}...'"
        )

    logger.info(f"Analysis provider configured: {arn}")
    return arn


def _initialize_client():
    # The analyzer owns the retry budget (one retry, then heuristics)
    client_config = Config(
        retries={'max_attempts': 0, 'mode': 'standard'},
        connect_timeout=PROVIDER_CONNECT_TIMEOUT,
        read_timeout=PROVIDER_READ_TIMEOUT
    )
    region = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))

    client = boto3.client('bedrock-agentcore', region_name=region, config=client_config)
    logger.info(
        f"Analysis provider client initialized: region={region}, "
        f"connect_timeout={PROVIDER_CONNECT_TIMEOUT}s, read_timeout={PROVIDER_READ_TIMEOUT}s"
    )
    return client


# Initialized once per container; a malformed ARN fails the cold start
AGENT_RUNTIME_ARN = _read_agent_runtime_arn()
bedrock_client = _initialize_client() if AGENT_RUNTIME_ARN else None


def is_configured() -> bool:
    return bool(AGENT_RUNTIME_ARN) and bedrock_client is not None


def session_id_for(organization_id: Optional[str] = None) -> str:
    """
    Build a fresh runtime session id, tagged with the organization.

    Each batch gets its own session so no conversation state leaks between
    organizations.

    Example:
        >>> session_id_for('acme').startswith('intel-acme-')
        True
    """
    tag = _UNSAFE_SESSION_CHARS.sub('-', organization_id or 'batch')[:40]
    session_id = f"intel-{tag}-{uuid.uuid4().hex}"
    return session_id.ljust(MIN_SESSION_ID_LENGTH, '0')


def extract_output(body: bytes) -> str:
    """
    Pull the completion text out of an agent runtime response body.

    The agent may answer with plain text, with {"response"|"output": ...},
    or with the insight array itself. Structured output is re-serialized so
    the caller always parses a string.
    """
    if not body:
        return ''

    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body.decode('utf-8', errors='replace') if isinstance(body, bytes) else str(body)

    if isinstance(data, dict):
        for field in ('response', 'output', 'result'):
            if field in data:
                data = data[field]
                break

    if isinstance(data, str):
        return data
    return json.dumps(data, ensure_ascii=False)


def complete(prompt: str, organization_id: Optional[str] = None) -> str:
    """
    Run one analysis prompt against the agent runtime.

    Args:
        prompt: Rendered batch prompt (already redacted)
        organization_id: Used only to tag the runtime session

    Returns:
        Completion text, possibly empty

    Raises:
        ValueError: If prompt is empty
        ConfigurationError: If the provider is not configured, or the runtime
            rejects the ARN or the caller's permissions
        ProviderUnavailable: On throttling, timeouts and other service errors
    """
    if not prompt or not isinstance(prompt, str):
        raise ValueError("Prompt must be a non-empty string")

    if not is_configured():
        raise ConfigurationError("Analysis provider is not configured (AGENT_RUNTIME_ARN missing)")

    session_id = session_id_for(organization_id)
    start_time = time.time()
    logger.info(f"Invoking analysis provider: prompt_length={len(prompt)}, session={session_id}")

    try:
        response = bedrock_client.invoke_agent_runtime(
            agentRuntimeArn=AGENT_RUNTIME_ARN,
            runtimeSessionId=session_id,
            payload=json.dumps({'prompt': prompt}),
            qualifier='DEFAULT'
        )
        output = extract_output(response['response'].read())
    except ClientError as e:
        error = e.response.get('Error', {})
        code = error.get('Code', 'Unknown')
        message = error.get('Message', str(e))

        if code in ('ResourceNotFoundException', 'AccessDeniedException'):
            logger.error(f"Analysis provider misconfigured: {code}: {message}")
            raise ConfigurationError(f"Analysis provider rejected the request ({code}): {message}") from e

        logger.error(f"Analysis provider call failed: error_code={code}, error_message={message}")
        raise ProviderUnavailable(f"{code}: {message}") from e

    if not output:
        logger.warning("Analysis provider returned an empty response")

    logger.info(
        f"Analysis provider succeeded: response_length={len(output)}, "
        f"execution_time={time.time() - start_time:.2f}s"
    )
    return output
