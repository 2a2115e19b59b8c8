"""
Queued analytics records.

Records are denormalised at ingress time so the flush path never needs a
lookup: a view carries its linktree id, a click carries both its link id
and its linktree id. Both always carry a non-empty IP address.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def clean(value) -> str:
    """Stringify and strip an identifier; None becomes ''"""
    if value is None:
        return ""
    return str(value).strip()


def is_identifier(value) -> bool:
    return bool(UUID_RE.match(clean(value)))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class ViewRecord:
    linktree_id: str
    ip_address: str
    session_id: Optional[str]
    viewed_at: datetime

    @classmethod
    def create(cls, linktree_id, ip_address, session_id=None, viewed_at=None) -> Optional["ViewRecord"]:
        """Build a record, or None if an identifier or the IP is missing"""
        linktree_id, ip_address = clean(linktree_id), clean(ip_address)
        if not linktree_id or not ip_address:
            return None
        return cls(linktree_id, ip_address, clean(session_id) or None, viewed_at or utcnow())

    def to_json(self) -> str:
        return json.dumps({
            "linktree_id": self.linktree_id,
            "ip_address": self.ip_address,
            "session_id": self.session_id,
            "viewed_at": self.viewed_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw) -> Optional["ViewRecord"]:
        data = _loads(raw)
        if data is None:
            return None
        viewed_at = _parse_ts(data.get("viewed_at"))
        if viewed_at is None:
            return None
        return cls.create(data.get("linktree_id"), data.get("ip_address"), data.get("session_id"), viewed_at)

    def to_document(self) -> dict:
        return {
            "linktree_id": self.linktree_id,
            "ip_address": self.ip_address,
            "session_id": self.session_id,
            "viewed_at": self.viewed_at,
        }


@dataclass(frozen=True)
class ClickRecord:
    link_id: str
    linktree_id: str
    ip_address: str
    session_id: Optional[str]
    clicked_at: datetime

    @classmethod
    def create(cls, link_id, linktree_id, ip_address, session_id=None, clicked_at=None) -> Optional["ClickRecord"]:
        link_id, linktree_id, ip_address = clean(link_id), clean(linktree_id), clean(ip_address)
        if not link_id or not linktree_id or not ip_address:
            return None
        return cls(link_id, linktree_id, ip_address, clean(session_id) or None, clicked_at or utcnow())

    def to_json(self) -> str:
        return json.dumps({
            "link_id": self.link_id,
            "linktree_id": self.linktree_id,
            "ip_address": self.ip_address,
            "session_id": self.session_id,
            "clicked_at": self.clicked_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw) -> Optional["ClickRecord"]:
        data = _loads(raw)
        if data is None:
            return None
        clicked_at = _parse_ts(data.get("clicked_at"))
        if clicked_at is None:
            return None
        return cls.create(
            data.get("link_id"), data.get("linktree_id"), data.get("ip_address"),
            data.get("session_id"), clicked_at,
        )

    def to_document(self) -> dict:
        return {
            "link_id": self.link_id,
            "linktree_id": self.linktree_id,
            "ip_address": self.ip_address,
            "session_id": self.session_id,
            "clicked_at": self.clicked_at,
        }


def _loads(raw) -> Optional[dict]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None
