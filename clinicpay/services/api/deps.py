"""Request-scoped dependencies: caller identity and rate limiting.

Two kinds of caller reach the API. Internal services (the DM booking worker)
send the shared `X-API-Key`. Doctors send a bearer token that the external
identity service resolves to a user id.
"""

import hmac
from dataclasses import dataclass
from time import time

import httpx
from fastapi import Header, Request

from clinicpay.common.errors import GatewayError, RateLimitedError, UnauthorizedError
from clinicpay.common.logging import logger


@dataclass(frozen=True)
class Caller:
    kind: str
    doctor_id: str | None = None

    @property
    def is_internal(self) -> bool:
        return self.kind == "internal"

    @property
    def rate_limit_key(self) -> str:
        return self.doctor_id or "internal"


class IdentityClient:
    """Resolves doctor bearer tokens against the identity service."""

    def __init__(self, http_client: httpx.Client, base_url: str, api_key: str | None = None) -> None:
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def resolve(self, token: str) -> str:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            resp = self.http_client.get(f"{self.base_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as exc:
            logger.error("identity_unavailable error=%s", exc)
            raise GatewayError("Identity service unavailable") from exc
        if resp.status_code in (401, 403):
            raise UnauthorizedError("Invalid or expired token")
        if resp.status_code >= 400:
            logger.error("identity_error status_code=%s", resp.status_code)
            raise GatewayError("Identity service unavailable")
        user_id = resp.json().get("id")
        if not user_id:
            raise UnauthorizedError("Invalid or expired token")
        return str(user_id)


class TokenBucket:
    """Redis token bucket per caller (capacity = refill per minute)."""

    def __init__(self, redis_client, limit_per_minute: int) -> None:
        self.redis = redis_client
        self.capacity = float(limit_per_minute)

    def consume(self, caller_key: str) -> None:
        key = f"tokenbucket:{caller_key}"
        now = time()
        refill_per_sec = self.capacity / 60.0

        values = self.redis.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        tokens = min(self.capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.redis.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.redis.expire(key, 120)
        if not allowed:
            raise RateLimitedError("Rate limit exceeded")


def get_caller(
    request: Request,
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Caller:
    """Authenticate the request; internal API key wins over a bearer token."""

    services = request.app.state.services
    if x_api_key is not None:
        if not hmac.compare_digest(x_api_key.encode("utf-8"), services.api_key.encode("utf-8")):
            raise UnauthorizedError("Invalid API key")
        return Caller(kind="internal")
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return Caller(kind="doctor", doctor_id=services.identity.resolve(token))
    raise UnauthorizedError("Missing credentials")


def require_doctor(caller: Caller) -> str:
    if caller.doctor_id is None:
        raise UnauthorizedError("Doctor credentials required")
    return caller.doctor_id


def enforce_rate_limit(request: Request, caller: Caller) -> None:
    limiter = request.app.state.services.rate_limiter
    if limiter is not None:
        limiter.consume(caller.rate_limit_key)


def require_internal(caller: Caller) -> None:
    if not caller.is_internal:
        raise UnauthorizedError("Internal credentials required")
