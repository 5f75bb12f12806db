"""
Persistence boundary.

The core depends only on the Store interface: hierarchy records,
submissions and insights, agent security configs, trust edges and the
shared-inbox tenant directory. InMemoryStore backs tests and single-process
runs; S3Store keeps one JSON object per record in STATE_BUCKET.
"""

import asyncio
import copy
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from .hierarchy import HierarchyRecord
from services import email as email_service

logger = logging.getLogger(__name__)

STATE_BUCKET = os.environ.get('STATE_BUCKET')
STATE_KEY_PREFIX = os.environ.get('STATE_KEY_PREFIX', 'state/')


class Store:
    """Async CRUD interface used by the core."""

    async def get_hierarchy(self, tenant_id: str) -> Optional[HierarchyRecord]:
        raise NotImplementedError

    async def save_hierarchy(self, tenant_id: str, record: HierarchyRecord) -> None:
        raise NotImplementedError

    async def save_submission(self, organization_id: str, submission: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def save_insights(self, organization_id: str, period: str, insights: List[Dict[str, Any]]) -> None:
        """Append insights for an organization and period."""
        raise NotImplementedError

    async def list_insights(self, organization_id: str, period: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def load_agent_configs(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def save_agent_config(self, config: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def has_trust(self, sender: str, agent: str) -> bool:
        raise NotImplementedError

    async def add_trust(self, sender: str, agent: str) -> None:
        raise NotImplementedError

    async def find_tenant_for_sender(self, agent_type: str, sender: str) -> Optional[str]:
        """Resolve a shared-inbox sender to a tenant (exact address, then domain)."""
        raise NotImplementedError

    async def register_tenant(self, agent_type: str, sender_or_domain: str, tenant_id: str) -> None:
        raise NotImplementedError


def _directory_lookup(directory: Dict[str, str], agent_type: str, sender: str) -> Optional[str]:
    sender = email_service.normalize_address(sender)
    domain = email_service.address_domain(sender)
    for key in (f"{agent_type}:{sender}", f"{agent_type}:{domain}"):
        if key in directory:
            return directory[key]
    return None


def _directory_key(agent_type: str, sender_or_domain: str) -> str:
    value = sender_or_domain.strip().lower().lstrip('@')
    return f"{agent_type}:{value}"


class InMemoryStore(Store):
    """Process-local store. State is lost on cold start."""

    def __init__(self):
        self._hierarchies: Dict[str, HierarchyRecord] = {}
        self._submissions: Dict[str, List[Dict[str, Any]]] = {}
        self._insights: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self._agent_configs: Dict[str, Dict[str, Any]] = {}
        self._trust: set = set()
        self._tenant_directory: Dict[str, str] = {}

    async def get_hierarchy(self, tenant_id):
        record = self._hierarchies.get(tenant_id)
        return copy.deepcopy(record) if record else None

    async def save_hierarchy(self, tenant_id, record):
        self._hierarchies[tenant_id] = copy.deepcopy(record)

    async def save_submission(self, organization_id, submission):
        self._submissions.setdefault(organization_id, []).append(dict(submission))

    def submissions(self, organization_id: str) -> List[Dict[str, Any]]:
        return list(self._submissions.get(organization_id, []))

    async def save_insights(self, organization_id, period, insights):
        self._insights.setdefault((organization_id, period), []).extend(copy.deepcopy(insights))

    async def list_insights(self, organization_id, period):
        return copy.deepcopy(self._insights.get((organization_id, period), []))

    async def load_agent_configs(self):
        return [dict(c) for c in self._agent_configs.values()]

    async def save_agent_config(self, config):
        self._agent_configs[config['agent_name']] = dict(config)

    async def has_trust(self, sender, agent):
        return (email_service.normalize_address(sender), agent) in self._trust

    async def add_trust(self, sender, agent):
        self._trust.add((email_service.normalize_address(sender), agent))

    async def find_tenant_for_sender(self, agent_type, sender):
        return _directory_lookup(self._tenant_directory, agent_type, sender)

    async def register_tenant(self, agent_type, sender_or_domain, tenant_id):
        self._tenant_directory[_directory_key(agent_type, sender_or_domain)] = tenant_id


class S3Store(Store):
    """
    JSON-object store in S3.

    Layout under STATE_KEY_PREFIX:
        hierarchy/<tenant>.json
        submissions/<org>/<message_id>.json
        insights/<org>/<period>.json
        agent-configs.json, trust.json, tenant-directory.json

    Updates are read-modify-write and assume a single writer process.
    """

    def __init__(self, bucket: str = None, prefix: str = None):
        # services.s3 creates its boto3 client at import
        from services import s3

        self._s3 = s3
        self.bucket = bucket or STATE_BUCKET
        self.prefix = prefix if prefix is not None else STATE_KEY_PREFIX
        if not self.bucket:
            raise ValueError("S3Store requires STATE_BUCKET")

    def _key(self, *parts: str) -> str:
        return self.prefix + '/'.join(parts)

    async def _get(self, key: str, default=None):
        value = await asyncio.to_thread(self._s3.get_json, self.bucket, key)
        return default if value is None else value

    async def _put(self, key: str, value) -> None:
        await asyncio.to_thread(self._s3.put_json, self.bucket, key, value)

    async def get_hierarchy(self, tenant_id):
        data = await self._get(self._key('hierarchy', f"{tenant_id}.json"))
        return HierarchyRecord.from_dict(data) if data else None

    async def save_hierarchy(self, tenant_id, record):
        await self._put(self._key('hierarchy', f"{tenant_id}.json"), record.to_dict())

    async def save_submission(self, organization_id, submission):
        name = submission.get('message_id') or submission.get('id') or 'unknown'
        await self._put(self._key('submissions', organization_id, f"{name}.json"), submission)

    async def save_insights(self, organization_id, period, insights):
        key = self._key('insights', organization_id, f"{period}.json")
        existing = await self._get(key, [])
        await self._put(key, existing + list(insights))

    async def list_insights(self, organization_id, period):
        return await self._get(self._key('insights', organization_id, f"{period}.json"), [])

    async def load_agent_configs(self):
        return list((await self._get(self._key('agent-configs.json'), {})).values())

    async def save_agent_config(self, config):
        key = self._key('agent-configs.json')
        configs = await self._get(key, {})
        configs[config['agent_name']] = config
        await self._put(key, configs)

    async def has_trust(self, sender, agent):
        edges = await self._get(self._key('trust.json'), [])
        return f"{email_service.normalize_address(sender)}:{agent}" in edges

    async def add_trust(self, sender, agent):
        key = self._key('trust.json')
        edges = await self._get(key, [])
        edge = f"{email_service.normalize_address(sender)}:{agent}"
        if edge not in edges:
            edges.append(edge)
            await self._put(key, edges)

    async def find_tenant_for_sender(self, agent_type, sender):
        directory = await self._get(self._key('tenant-directory.json'), {})
        return _directory_lookup(directory, agent_type, sender)

    async def register_tenant(self, agent_type, sender_or_domain, tenant_id):
        key = self._key('tenant-directory.json')
        directory = await self._get(key, {})
        directory[_directory_key(agent_type, sender_or_domain)] = tenant_id
        await self._put(key, directory)


def create_store() -> Store:
    """S3Store when STATE_BUCKET is configured, otherwise InMemoryStore."""
    if STATE_BUCKET:
        logger.info(f"Using S3 state store: s3://{STATE_BUCKET}/{STATE_KEY_PREFIX}")
        return S3Store(STATE_BUCKET, STATE_KEY_PREFIX)
    logger.info("STATE_BUCKET not set, using in-memory state store")
    return InMemoryStore()
