"""Per-caller token bucket."""

import pytest

from clinicpay.common.errors import RateLimitedError
from clinicpay.services.api.deps import Caller, TokenBucket


class InMemoryHashes:
    """The three redis hash commands the bucket uses."""

    def __init__(self):
        self.data = {}

    def hmget(self, key, *fields):
        row = self.data.get(key, {})
        return [row.get(field) for field in fields]

    def hset(self, key, mapping):
        self.data.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


def test_bucket_allows_capacity_then_limits():
    bucket = TokenBucket(InMemoryHashes(), limit_per_minute=3)
    for _ in range(3):
        bucket.consume("doc-1")
    with pytest.raises(RateLimitedError):
        bucket.consume("doc-1")


def test_buckets_are_per_caller():
    bucket = TokenBucket(InMemoryHashes(), limit_per_minute=1)
    bucket.consume("doc-1")
    bucket.consume("doc-2")


def test_rate_limit_key():
    assert Caller(kind="doctor", doctor_id="doc-1").rate_limit_key == "doc-1"
    assert Caller(kind="internal").rate_limit_key == "internal"
    assert Caller(kind="internal").is_internal
