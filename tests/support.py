"""Test doubles and builders shared across the suite."""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from models.schemas import ActionJob, ActionKind


class FrozenClock:
    """Wall clock for the scanner; only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakePlatformClient:
    """
    Call-counting stand-in for PlatformClient.

    Outcomes scripted per path suffix are consumed in order; once a
    suffix runs out, calls succeed with a fresh id.
    """

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self._scripts: dict[str, list[Any]] = {}

    def script(self, suffix: str, *outcomes: Any) -> None:
        self._scripts.setdefault(suffix, []).extend(outcomes)

    def count(self, suffix: str) -> int:
        return sum(1 for c in self.calls if c["path"].endswith(suffix))

    def paths(self) -> list[str]:
        return [c["path"] for c in self.calls]

    async def post(self, path, access_token, params=None, json=None, timeout=None):
        self.calls.append({
            "path": path, "access_token": access_token,
            "params": params, "json": json, "timeout": timeout,
        })
        for suffix, outcomes in self._scripts.items():
            if path.endswith(suffix) and outcomes:
                outcome = outcomes.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return {"id": f"ext-{len(self.calls)}"}

    async def close(self):
        pass


def make_job(kind: ActionKind = ActionKind.SEND_MESSAGE, destination_id: str = "dest-a", **overrides) -> ActionJob:
    payloads = {
        ActionKind.REPLY_TO_COMMENT: {"parent_comment_id": "c-1", "reply_text": "thanks!"},
        ActionKind.REPLY_TO_MESSAGE: {"recipient_ref": "thread-1", "message_text": "hello"},
        ActionKind.SEND_MESSAGE: {"recipient_ref": "r1", "message_text": "hi"},
        ActionKind.PUBLISH_CONTENT: {
            "media_url": "https://cdn.example.com/p.jpg",
            "caption": "launch day",
            "media_type": "IMAGE",
            "related_scheduled_item_id": "sched-1",
        },
        ActionKind.REPOST_CONTENT: {"permission_record_id": "perm-1"},
    }
    fields = {"destination_id": destination_id, "action_kind": kind, "payload": payloads[kind]}
    fields.update(overrides)
    return ActionJob(**fields)


