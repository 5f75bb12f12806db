"""
Prompt templates for the analysis provider.

A template is resolved in this order:
1. In-memory cache (TTL, warm Lambda invocations)
2. S3 override under PROMPT_BUCKET/PROMPT_KEY_PREFIX, used only if it still
   declares every placeholder the analyzer fills in
3. The copy packaged in src/prompts/
"""

import logging
import os
import string
import time
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

from botocore.exceptions import ClientError

from services import s3

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = int(os.environ.get('PROMPT_CACHE_TTL', '300'))

PROMPT_BUCKET = os.environ.get('PROMPT_BUCKET')
PROMPT_KEY_PREFIX = os.environ.get('PROMPT_KEY_PREFIX', 'prompts/')

# src/services/prompts.py -> src/prompts/
PROMPTS_DIR = Path(__file__).parent.parent / 'prompts'

INTELLIGENCE_BATCH_PROMPT = 'intelligence_batch.txt'

REQUIRED_VARIABLES: Dict[str, FrozenSet[str]] = {
    INTELLIGENCE_BATCH_PROMPT: frozenset({'organization_id', 'item_count', 'items'}),
}

# {prompt_name: (content, loaded_at)}
_prompt_cache: Dict[str, Tuple[str, float]] = {}


def template_variables(template: str) -> FrozenSet[str]:
    """
    Placeholder names a template expects.

    Example:
        >>> sorted(template_variables('{a} and {{literal}} and {b}'))
        ['a', 'b']
    """
    return frozenset(
        field for _, field, _, _ in string.Formatter().parse(template)
        if field
    )


def _missing_variables(prompt_name: str, content: str) -> FrozenSet[str]:
    return REQUIRED_VARIABLES.get(prompt_name, frozenset()) - template_variables(content)


def _load_from_filesystem(prompt_name: str) -> str:
    """
    Raises:
        FileNotFoundError: If the packaged template doesn't exist
    """
    prompt_path = PROMPTS_DIR / prompt_name
    with open(prompt_path, 'r', encoding='utf-8') as f:
        content = f.read()

    logger.info(f"Loaded packaged prompt {prompt_name}: {len(content)} characters")
    return content


def _load_from_s3(prompt_name: str) -> str:
    """
    Load the S3 override of a template.

    Raises:
        ValueError: If PROMPT_BUCKET not set or the bucket is missing
        KeyError: If the override object does not exist
    """
    if not PROMPT_BUCKET:
        raise ValueError("PROMPT_BUCKET environment variable not set")

    s3_key = f"{PROMPT_KEY_PREFIX}{prompt_name}"
    content = s3.get_text(PROMPT_BUCKET, s3_key)

    logger.info(f"Loaded prompt override s3://{PROMPT_BUCKET}/{s3_key}: {len(content)} characters")
    return content


def _load_override(prompt_name: str) -> Optional[str]:
    try:
        content = _load_from_s3(prompt_name)
    except (ClientError, KeyError, ValueError) as e:
        logger.info(f"No usable S3 override for {prompt_name} ({e.__class__.__name__}), using packaged copy")
        return None

    missing = _missing_variables(prompt_name, content)
    if missing:
        logger.warning(
            f"Ignoring S3 override for {prompt_name}: missing placeholders {sorted(missing)}"
        )
        return None
    return content


def _cached(prompt_name: str, now: float) -> Optional[str]:
    entry = _prompt_cache.get(prompt_name)
    if entry is None:
        return None

    content, loaded_at = entry
    age = now - loaded_at
    if age < CACHE_TTL_SECONDS:
        return content

    logger.info(f"Prompt {prompt_name} expired (age: {int(age)}s > TTL: {CACHE_TTL_SECONDS}s), reloading")
    return None


def load_prompt(prompt_name: str, use_cache: bool = True) -> str:
    """
    Load a template, preferring a valid S3 override over the packaged copy.

    Args:
        prompt_name: Template file name (e.g. "intelligence_batch.txt")
        use_cache: Serve from the in-memory cache when fresh (default: True)

    Raises:
        ValueError: If the template is found nowhere
    """
    now = time.time()

    if use_cache:
        cached = _cached(prompt_name, now)
        if cached is not None:
            return cached

    content = _load_override(prompt_name) if PROMPT_BUCKET else None

    if content is None:
        try:
            content = _load_from_filesystem(prompt_name)
        except FileNotFoundError:
            logger.error(f"Prompt not found: {prompt_name}. Expected location: {PROMPTS_DIR / prompt_name}")
            raise ValueError(f"Prompt '{prompt_name}' not found in S3 or local filesystem")

    _prompt_cache[prompt_name] = (content, now)
    return content


def format_prompt(template: str, **variables) -> str:
    """
    Fill a template's placeholders.

    Values are inserted verbatim; braces inside them (message JSON, a
    literal "{variable}") are not re-interpreted.

    Raises:
        ValueError: If the template needs a variable that was not passed

    Example:
        >>> format_prompt("Analyze: {items}", items='[{"index": 0}]')
        'Analyze: [{"index": 0}]'
    """
    try:
        return template.format(**variables)
    except KeyError as e:
        missing_var = str(e).strip("'")
        logger.error(f"Missing variable in prompt template: {missing_var}")
        raise ValueError(f"Missing required variable in prompt: {missing_var}")


def render_prompt(prompt_name: str, **variables) -> str:
    return format_prompt(load_prompt(prompt_name), **variables)


def clear_cache() -> None:
    _prompt_cache.clear()
    logger.info("Prompt cache cleared")
