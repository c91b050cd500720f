"""
Rule job envelope.

A ``RuleJob`` wraps the action-specific job created for one event and
rule so it can be queued or persisted and executed later, possibly on
another host. The action-specific data is stored as plain JSON.
"""

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from rule_dispatch.utils.timezone import now_utc, to_iso

DEFAULT_EXPIRY = timedelta(days=2)


@dataclass
class RuleJob:
    """
    Serializable description of one action invocation.

    Attributes:
        action_kind: Handler tag, e.g. "Webhook" or "Algolia"
        description: Human-readable description of what the job does
        job_data: Action-specific job as a JSON-ready dict
        app_id: App the triggering event belongs to
        event_name: Name of the triggering event
        rule_name: Name of the rule that produced the job
        job_id: Unique job id
        created: Creation time (UTC)
        expires: Time after which the job is no longer executed (UTC)
    """

    action_kind: str
    description: str
    job_data: Dict[str, Any]
    app_id: Optional[str] = None
    event_name: str = ""
    rule_name: str = ""
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created: datetime = field(default_factory=now_utc)
    expires: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.expires is None:
            self.expires = self.created + DEFAULT_EXPIRY

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or now_utc()) >= self.expires

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created"] = to_iso(self.created)
        data["expires"] = to_iso(self.expires)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleJob":
        values = dict(data)
        for key in ("created", "expires"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key].replace("Z", "+00:00"))
        return cls(**values)

    @classmethod
    def from_json(cls, raw: str) -> "RuleJob":
        return cls.from_dict(json.loads(raw))
