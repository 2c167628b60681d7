import asyncio
import json

import httpx
import pytest

from comic_story.kv_storage import InMemoryJobStore, KVJobStore
from comic_story.models import DuplicateJobError, Job, JobFinishedError, JobStatus, StorageError


class FakeRedis:
    """Just enough of the Upstash REST command API for the job store."""

    def __init__(self):
        self.strings = {}
        self.lists = {}
        self.commands = []
        self.headers = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        cmd = json.loads(request.content)
        self.commands.append(cmd)
        self.headers.append(request.headers)
        name, args = cmd[0], cmd[1:]
        if name == "SET":
            key, value, *flags = args
            if "NX" in flags and key in self.strings:
                return httpx.Response(200, json={"result": None})
            if "XX" in flags and key not in self.strings:
                return httpx.Response(200, json={"result": None})
            self.strings[key] = value
            return httpx.Response(200, json={"result": "OK"})
        if name == "GET":
            return httpx.Response(200, json={"result": self.strings.get(args[0])})
        if name == "LPUSH":
            self.lists.setdefault(args[0], []).insert(0, args[1])
            return httpx.Response(200, json={"result": len(self.lists[args[0]])})
        if name == "LRANGE":
            return httpx.Response(200, json={"result": list(self.lists.get(args[0], []))})
        if name == "MGET":
            return httpx.Response(200, json={"result": [self.strings.get(k) for k in args]})
        return httpx.Response(200, json={"error": f"ERR unknown command {name}"})


def _kv(redis):
    return KVJobStore(url="https://kv.example", token="secret", transport=httpx.MockTransport(redis))


def test_kv_create_and_find_one():
    redis = FakeRedis()
    store = _kv(redis)

    async def go():
        await store.create(Job(job_id="1", status=JobStatus.GENERATING_STORY).to_record())
        return await store.find_one("1"), await store.find_one("2")

    found, missing = asyncio.run(go())
    assert found["status"] == "generating_story"
    assert missing is None
    assert redis.commands[0][0] == "SET" and redis.commands[0][-1] == "NX"
    assert redis.headers[0]["authorization"] == "Bearer secret"


def test_kv_refuses_duplicate_ids():
    store = _kv(FakeRedis())

    async def go():
        await store.create(Job(job_id="1").to_record())
        await store.create(Job(job_id="1").to_record())

    with pytest.raises(DuplicateJobError):
        asyncio.run(go())


def test_kv_partial_update_merges_fields():
    store = _kv(FakeRedis())

    async def go():
        await store.create(Job(job_id="1", current_step="Starting...").to_record())
        updated = await store.find_one_and_update("1", {"progress": 30})
        missing = await store.find_one_and_update("nope", {"progress": 30})
        return updated, missing

    updated, missing = asyncio.run(go())
    assert updated["progress"] == 30
    assert updated["current_step"] == "Starting..."
    assert missing is None


def test_kv_find_filters_by_status_newest_first():
    store = _kv(FakeRedis())

    async def go():
        await store.create(Job(job_id="1", status=JobStatus.COMPLETED).to_record())
        await store.create(Job(job_id="2", status=JobStatus.ERROR).to_record())
        await store.create(Job(job_id="3", status=JobStatus.COMPLETED).to_record())
        return await store.find(status="completed"), await store.find()

    completed, everything = asyncio.run(go())
    assert [r["job_id"] for r in completed] == ["3", "1"]
    assert len(everything) == 3


def test_kv_errors_raise_storage_error():
    def failing(request):
        return httpx.Response(503, text="unavailable")

    store = KVJobStore(url="https://kv.example", token="t", transport=httpx.MockTransport(failing))
    with pytest.raises(StorageError):
        asyncio.run(store.find_one("1"))


def test_kv_command_error_payload_raises_storage_error():
    def wrongtype(request):
        return httpx.Response(200, json={"error": "WRONGTYPE"})

    store = KVJobStore(url="https://kv.example", token="t", transport=httpx.MockTransport(wrongtype))
    with pytest.raises(StorageError):
        asyncio.run(store.find_one("1"))


def test_in_memory_store_does_not_share_state_with_callers():
    store = InMemoryJobStore()
    record = Job(job_id="1").to_record()

    async def go():
        await store.create(record)
        record["status"] = "completed"
        found = await store.find_one("1")
        found["progress"] = 99
        return await store.find_one("1")

    stored = asyncio.run(go())
    assert stored["status"] == "pending"
    assert stored["progress"] == 0


@pytest.mark.parametrize("make_store", [InMemoryJobStore, lambda: _kv(FakeRedis())])
def test_guarded_update_refuses_finished_jobs(make_store):
    store = make_store()

    async def go():
        await store.create(Job(job_id="1", status=JobStatus.COMPLETED, progress=100).to_record())
        await store.create(Job(job_id="2", status=JobStatus.GENERATING_IMAGES, progress=30).to_record())
        with pytest.raises(JobFinishedError):
            await store.find_one_and_update("1", {"status": "error"}, skip_terminal=True)
        advanced = await store.find_one_and_update("2", {"progress": 50}, skip_terminal=True)
        return await store.find_one("1"), advanced

    finished, advanced = asyncio.run(go())
    assert finished["status"] == "completed"
    assert advanced["progress"] == 50
