"""Shared fixtures and in-memory fakes for SQS, S3, Redis and Playwright."""

import io
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient


def client_error(code: str = "InternalError", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised"}}, operation)


# ---------------------------------------------------------------------------
# AWS fakes (synchronous, like boto3 clients)
# ---------------------------------------------------------------------------


class FakeSQS:
    """Records calls and answers like the SQS API."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_job_ids: set[str] = set()
        self.batch_errors: dict[int, Exception] = {}
        self.send_error: Exception | None = None
        self.messages: list[dict] = []
        self.deleted: list[str] = []
        self._next_id = 0

    def _message_id(self) -> str:
        self._next_id += 1
        return f"msg-{self._next_id}"

    def batch_calls(self) -> list[dict]:
        return [kw for name, kw in self.calls if name == "send_message_batch"]

    def send_message(self, **kwargs):
        self.calls.append(("send_message", kwargs))
        if self.send_error:
            raise self.send_error
        return {"MessageId": self._message_id()}

    def send_message_batch(self, **kwargs):
        index = len(self.batch_calls())
        self.calls.append(("send_message_batch", kwargs))
        if index in self.batch_errors:
            raise self.batch_errors[index]

        successful, failed = [], []
        for entry in kwargs["Entries"]:
            body = json.loads(entry["MessageBody"])
            if body["id"] in self.fail_job_ids:
                failed.append(
                    {
                        "Id": entry["Id"],
                        "SenderFault": False,
                        "Code": "InternalError",
                        "Message": "Queue unavailable",
                    }
                )
            else:
                successful.append({"Id": entry["Id"], "MessageId": self._message_id()})
        resp = {"Successful": successful}
        if failed:
            resp["Failed"] = failed
        return resp

    def receive_message(self, **kwargs):
        self.calls.append(("receive_message", kwargs))
        count = kwargs.get("MaxNumberOfMessages", 1)
        batch, self.messages = self.messages[:count], self.messages[count:]
        return {"Messages": batch} if batch else {}

    def delete_message(self, **kwargs):
        self.calls.append(("delete_message", kwargs))
        self.deleted.append(kwargs["ReceiptHandle"])
        return {}

    def get_queue_attributes(self, **kwargs):
        self.calls.append(("get_queue_attributes", kwargs))
        return {"Attributes": {"ApproximateNumberOfMessages": "3"}}


class FakeS3:
    """In-memory bucket storing decoded JSON bodies by key."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.content_types: dict[str, str] = {}
        self.fail_puts = False
        self.fail_next_puts = 0

    def put_object(self, Bucket, Key, Body, ContentType=None):
        if self.fail_puts:
            raise client_error("AccessDenied", "PutObject")
        if self.fail_next_puts:
            self.fail_next_puts -= 1
            raise client_error("SlowDown", "PutObject")
        self.objects[Key] = json.loads(Body)
        self.content_types[Key] = ContentType
        return {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(json.dumps(self.objects[Key]).encode())}

    def list_objects_v2(self, Bucket, Prefix="", ContinuationToken=None):
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}


# ---------------------------------------------------------------------------
# Redis fake (async, decode_responses=True semantics)
# ---------------------------------------------------------------------------


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops: list[tuple] = []

    def delete(self, *keys):
        self._ops.append(("delete", keys, {}))
        return self

    def hset(self, key, mapping=None):
        self._ops.append(("hset", (key,), {"mapping": mapping}))
        return self

    def set(self, key, value):
        self._ops.append(("set", (key, value), {}))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """Minimal fake Redis for the shared proxy pool store."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)

    async def get(self, key):
        return self._store.get(key)

    async def set(self, key, value):
        self._store[key] = str(value)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for space in (self._store, self._hashes, self._zsets):
                if space.pop(key, None) is not None:
                    removed += 1
        return removed

    async def hset(self, key, mapping=None):
        self._hashes.setdefault(key, {}).update(mapping or {})
        return len(mapping or {})

    async def hgetall(self, key):
        return dict(self._hashes.get(key, {}))

    async def hdel(self, key, *fields):
        h = self._hashes.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    async def zadd(self, key, mapping):
        self._zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrem(self, key, *members):
        z = self._zsets.get(key, {})
        return sum(1 for m in members if z.pop(m, None) is not None)

    async def zrange(self, key, start, end, withscores=False):
        items = sorted(self._zsets.get(key, {}).items(), key=lambda kv: kv[1])
        if withscores:
            return items
        return [k for k, _ in items]

    async def ping(self):
        return True


# ---------------------------------------------------------------------------
# Browser fakes
# ---------------------------------------------------------------------------


def make_page(html: str = "<html><head><title>t</title></head><body></body></html>"):
    page = MagicMock()
    page.url = "https://example.com/"
    page.content = AsyncMock(return_value=html)
    page.query_selector = AsyncMock(return_value=None)
    page.close = AsyncMock()
    page.evaluate = AsyncMock(return_value=True)
    return page


class FakeSession:
    """Stands in for BrowserSession: records pages and closes."""

    def __init__(self, proxy, healthy: bool = True):
        self.proxy = proxy
        self.healthy = healthy
        self.closed = False
        self.pages = []
        self.health_checks = 0

    async def new_page(self):
        page = make_page()
        self.pages.append(page)
        return page

    async def close_page(self, page):
        await page.close()

    async def is_healthy(self):
        self.health_checks += 1
        return self.healthy

    async def close(self):
        self.closed = True


class FakeBrowserManager:
    """Stands in for BrowserSessionManager."""

    def __init__(self, challenge: bool = False, solves: bool = False):
        self.sessions: list[FakeSession] = []
        self.challenge = challenge
        self.solves = solves
        self.solve_calls = 0
        self.closed_all = False

    async def launch(self, proxy=None, options=None):
        session = FakeSession(proxy)
        self.sessions.append(session)
        return session

    async def detect_challenge(self, page):
        return self.challenge

    async def solve_challenge(self, page):
        self.solve_calls += 1
        return self.solves

    async def close_all(self):
        self.closed_all = True
        for s in self.sessions:
            await s.close()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_sqs():
    return FakeSQS()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue_client(fake_sqs):
    from marketpulse.services.queue import QueueClient

    return QueueClient("https://sqs.test/123/jobs", fake_sqs)


@pytest.fixture
def result_store(fake_s3):
    from marketpulse.services.storage import ResultStore

    return ResultStore("test-bucket", fake_s3)


@pytest_asyncio.fixture
async def client(queue_client):
    from marketpulse.api.deps import get_queue
    from marketpulse.main import app

    app.dependency_overrides[get_queue] = lambda: queue_client
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
