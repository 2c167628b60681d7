import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict
from pydantic import BaseModel
from .kv_storage import JobStore
from .models import JobNotFoundError, utcnow

logger = logging.getLogger(__name__)


def _to_record_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class ProgressReporter:
    """Merges partial fields into a job record without reading it first.

    Every update also stamps ``updated_at``. ``advance`` refuses to touch a
    job that already reached completed/error and raises JobFinishedError.
    """

    def __init__(self, store: JobStore):
        self.store = store

    async def _write(self, job_id: str, fields: Dict[str, Any], skip_terminal: bool) -> Dict[str, Any]:
        values = {k: _to_record_value(v) for k, v in fields.items()}
        values["updated_at"] = utcnow().isoformat()
        record = await self.store.find_one_and_update(job_id, values, skip_terminal=skip_terminal)
        if record is None:
            raise JobNotFoundError(f"job {job_id} not found")
        logger.debug(f"Job {job_id} updated: {sorted(values)}")
        return record

    async def update(self, job_id: str, **fields: Any) -> Dict[str, Any]:
        return await self._write(job_id, fields, skip_terminal=False)

    async def advance(self, job_id: str, **fields: Any) -> Dict[str, Any]:
        return await self._write(job_id, fields, skip_terminal=True)
