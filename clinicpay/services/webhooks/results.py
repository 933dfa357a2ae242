"""Outcome of one webhook delivery, shared by the orchestrator and ingress."""

from typing import Literal

from pydantic import BaseModel

Outcome = Literal["applied", "duplicate", "ignored", "rejected", "unauthorized", "bad_request", "not_found"]

STATUS_CODES: dict[str, int] = {
    "applied": 200,
    "duplicate": 200,
    "ignored": 200,
    # Domain rejections are recorded for manual reconciliation; a retry would not help.
    "rejected": 200,
    "unauthorized": 401,
    "bad_request": 400,
    "not_found": 404,
}


class ApplyResult(BaseModel):
    """What happened to a delivery. `changed` is False for no-op applications."""

    outcome: Outcome
    provider: str
    event_id: str | None = None
    detail: str | None = None
    changed: bool = False


def status_code_for(result: ApplyResult) -> int:
    return STATUS_CODES[result.outcome]
