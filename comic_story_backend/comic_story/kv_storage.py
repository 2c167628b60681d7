"""
Job record storage.

Records are JSON-compatible dicts keyed by ``job_id``. Two backends share one
interface: an in-process store for local development and tests, and the
Vercel KV (Upstash Redis) REST API so job state survives across workers.
"""
import asyncio
import copy
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .models import DuplicateJobError, JobFinishedError, StorageError, TERMINAL_STATUSES
from .settings import KV_REST_API_TOKEN, KV_REST_API_URL

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def create(self, record: Dict[str, Any]) -> None: ...

    async def find_one(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    async def find_one_and_update(self, job_id: str, fields: Dict[str, Any],
                                  skip_terminal: bool = False) -> Optional[Dict[str, Any]]: ...

    async def find(self, status: Optional[str] = None) -> List[Dict[str, Any]]: ...


_TERMINAL = {s.value for s in TERMINAL_STATUSES}


def _check_not_finished(job_id: str, record: Dict[str, Any], skip_terminal: bool):
    if skip_terminal and record.get("status") in _TERMINAL:
        raise JobFinishedError(f"job {job_id} is already {record.get('status')}")


class InMemoryJobStore:
    """Dict-backed store; copies on every read and write."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: Dict[str, Any]) -> None:
        job_id = record["job_id"]
        async with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobError(f"job {job_id} already exists")
            self._jobs[job_id] = copy.deepcopy(record)

    async def find_one(self, job_id: str) -> Optional[Dict[str, Any]]:
        record = self._jobs.get(job_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_one_and_update(self, job_id: str, fields: Dict[str, Any],
                                  skip_terminal: bool = False) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            _check_not_finished(job_id, record, skip_terminal)
            record.update(copy.deepcopy(fields))
            return copy.deepcopy(record)

    async def find(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        # newest first
        records = reversed(list(self._jobs.values()))
        return [copy.deepcopy(r) for r in records if status is None or r.get("status") == status]


class KVJobStore:
    INDEX_KEY = "jobs:index"

    def __init__(
        self,
        url: str = KV_REST_API_URL,
        token: str = KV_REST_API_TOKEN,
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }

    @staticmethod
    def _key(job_id: str) -> str:
        return f"job:{job_id}"

    async def _command(self, *args: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, headers=self._headers(), json=list(args))
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"KV command {args[0]} failed: {e}")
            raise StorageError(f"KV command {args[0]} failed: {e}") from e
        if "error" in data:
            logger.error(f"KV command {args[0]} returned error: {data['error']}")
            raise StorageError(f"KV command {args[0]} returned error: {data['error']}")
        return data.get("result")

    async def create(self, record: Dict[str, Any]) -> None:
        job_id = record["job_id"]
        result = await self._command("SET", self._key(job_id), json.dumps(record), "NX")
        if result is None:
            raise DuplicateJobError(f"job {job_id} already exists")
        await self._command("LPUSH", self.INDEX_KEY, job_id)
        logger.info(f"Stored job {job_id} in KV")

    async def find_one(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._command("GET", self._key(job_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def find_one_and_update(self, job_id: str, fields: Dict[str, Any],
                                  skip_terminal: bool = False) -> Optional[Dict[str, Any]]:
        # Progress for a job id is written only by its own orchestrator task;
        # reconciliation only touches records that have stopped updating.
        record = await self.find_one(job_id)
        if record is None:
            return None
        _check_not_finished(job_id, record, skip_terminal)
        record.update(fields)
        await self._command("SET", self._key(job_id), json.dumps(record), "XX")
        return record

    async def find(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        job_ids = await self._command("LRANGE", self.INDEX_KEY, 0, -1) or []
        if not job_ids:
            return []
        raws = await self._command("MGET", *[self._key(j) for j in job_ids]) or []
        records = [json.loads(raw) for raw in raws if raw]
        return [r for r in records if status is None or r.get("status") == status]


def get_store() -> JobStore:
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        logger.info("KV storage enabled")
        return KVJobStore()
    logger.warning("KV storage not configured - falling back to in-memory storage")
    return InMemoryJobStore()
