"""
AWS Lambda handler for inbound agent email delivered through SQS.

Thin orchestration layer that delegates to EmailProcessor.
Policy: Always delete messages (no retries). Errors logged to CloudWatch.
Queued analysis is flushed before the invocation returns.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List

from domain.email_processor import create_email_processor
from domain.models import ProcessingResult

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'dev')

# Configure logging
logger = logging.getLogger()
logger.setLevel(LOG_LEVEL)

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(LOG_LEVEL)
    formatter = logging.Formatter('%(levelname)s - %(name)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

# Initialize processor once at module level (reused across warm invocations)
email_processor = create_email_processor()
_configs_loaded = False


async def _process_records(records: List[Dict[str, Any]]) -> List[ProcessingResult]:
    global _configs_loaded
    if not _configs_loaded:
        loaded = await email_processor.load_persisted_configs()
        logger.info(f"Loaded {loaded} persisted agent security config(s)")
        _configs_loaded = True

    results = []
    for record in records:
        result = await email_processor.process_record(record)
        results.append(result)

        if result.success:
            logger.info(f"✓ Processed message {result.message_id} ({result.status.value})")
        else:
            logger.warning(
                f"⚠ Message {result.message_id} not processed ({result.status.value}): "
                f"{result.error_message}"
            )
        if result.reply_text:
            logger.info(f"Reply to sender of {result.message_id}: {result.reply_text}")

    outcomes = await email_processor.queue.flush()
    await email_processor.reports.drain()
    logger.info(f"Analysis flushed: {len(outcomes)} item(s)")
    return results


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Process agent email notifications from SQS.

    Args:
        event: Lambda event with SQS records
        context: Lambda context

    Returns:
        Dict with batchItemFailures (always empty - no retries)
    """
    logger.info("=" * 70)
    logger.info(f"Agent Email Router - Started (environment={ENVIRONMENT})")
    logger.info("=" * 70)

    records = event.get('Records', [])
    logger.info(f"Processing batch of {len(records)} message(s)")

    results = asyncio.run(_process_records(records))

    # Log summary
    logger.info("=" * 70)
    logger.info(f"Batch processing complete: {len(results)} message(s)")
    for status in ('processed', 'rejected', 'dropped_unroutable', 'failed'):
        count = sum(1 for r in results if r.status.value == status)
        logger.info(f"  {status}: {count}")
    logger.info("=" * 70)

    return {"batchItemFailures": []}
