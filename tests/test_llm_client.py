import pytest

from core_logic.errors import QuotaExhaustedError
from core_logic.llm_client import CredentialPool, RotatingCompletionClient, is_quota_error
from tests.fakes import FakeCompletionClient


def _factory(scripts):
    """Per-key fake clients; `scripts` maps an API key to its scripted responses."""
    clients = {}

    def build(api_key):
        clients[api_key] = FakeCompletionClient(scripts[api_key])
        return clients[api_key]

    return build, clients


@pytest.mark.asyncio
async def test_quota_errors_rotate_to_the_next_key():
    """Two exhausted keys, third succeeds; the pool rotates exactly twice"""
    pool = CredentialPool(["k1", "k2", "k3"])
    build, clients = _factory({
        "k1": [RuntimeError("429 Too Many Requests")],
        "k2": [RuntimeError("RESOURCE_EXHAUSTED: quota exceeded")],
        "k3": ["answer"],
    })
    client = RotatingCompletionClient(pool, client_factory=build, retry_delay=0)

    assert await client.complete("prompt") == "answer"
    assert pool.rotations == 2
    assert pool.current_index == 2
    assert pool.current() == "k3"
    assert clients["k3"].prompts == ["prompt"]


@pytest.mark.asyncio
async def test_all_keys_exhausted_raises():
    pool = CredentialPool(["k1", "k2"])
    build, _ = _factory({"k1": [RuntimeError("429")], "k2": [RuntimeError("quota")]})
    client = RotatingCompletionClient(pool, client_factory=build, retry_delay=0)

    with pytest.raises(QuotaExhaustedError):
        await client.complete("prompt")
    assert pool.rotations == 1


@pytest.mark.asyncio
async def test_other_errors_propagate_without_rotation():
    pool = CredentialPool(["k1", "k2"])
    build, _ = _factory({"k1": [ConnectionError("connection reset")], "k2": ["unused"]})
    client = RotatingCompletionClient(pool, client_factory=build, retry_delay=0)

    with pytest.raises(ConnectionError):
        await client.complete("prompt")
    assert pool.rotations == 0
    assert pool.current_index == 0


def test_pool_wraps_around():
    pool = CredentialPool(["a", "b"])
    assert pool.rotate() == "b"
    assert pool.rotate() == "a"
    assert len(pool) == 2


def test_empty_pool_is_rejected():
    with pytest.raises(ValueError):
        CredentialPool([])


def test_is_quota_error():
    assert is_quota_error(RuntimeError("Error 429"))
    assert is_quota_error(RuntimeError("RESOURCE_EXHAUSTED"))
    assert not is_quota_error(RuntimeError("syntax error"))


def test_quota_sentinel_must_stand_alone():
    assert is_quota_error(RuntimeError("Error code: 429 - insufficient_quota"))
    assert not is_quota_error(RuntimeError("connect to 10.0.0.5:14290 refused"))
    assert not is_quota_error(RuntimeError("duplicate key value (order_id)=(4291)"))


def test_status_code_429_is_a_quota_error():
    class RateLimited(Exception):
        status_code = 429

    assert is_quota_error(RateLimited("slow down"))
