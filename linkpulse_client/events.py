from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class QueuedView:
    uid: str
    enqueued_at_ms: int


@dataclass(frozen=True)
class QueuedClick:
    link_id: str
    linktree_id: str
    enqueued_at_ms: int


QueuedEvent = Union[QueuedView, QueuedClick]


def event_to_dict(event: QueuedEvent) -> dict:
    if isinstance(event, QueuedView):
        return {"type": "view", "uid": event.uid, "timestamp": event.enqueued_at_ms}
    if isinstance(event, QueuedClick):
        return {
            "type": "click",
            "linkId": event.link_id,
            "linktreeId": event.linktree_id,
            "timestamp": event.enqueued_at_ms,
        }
    raise TypeError(f"Unknown queued event: {event!r}")


def event_from_dict(data) -> Optional[QueuedEvent]:
    """Rebuild an event from storage; None for anything unrecognised"""
    if not isinstance(data, dict):
        return None
    ts = data.get("timestamp")
    if not isinstance(ts, (int, float)) or isinstance(ts, bool):
        return None
    kind = data.get("type")
    if kind == "view":
        uid = data.get("uid")
        if isinstance(uid, str) and uid.strip():
            return QueuedView(uid.strip(), int(ts))
        return None
    if kind == "click":
        link_id, linktree_id = data.get("linkId"), data.get("linktreeId")
        if isinstance(link_id, str) and isinstance(linktree_id, str) and link_id.strip() and linktree_id.strip():
            return QueuedClick(link_id.strip(), linktree_id.strip(), int(ts))
        return None
    return None


def batch_payload(events) -> dict:
    """Split events into the ingress body {views: [...], clicks: [...]}"""
    views, clicks = [], []
    for event in events:
        if isinstance(event, QueuedView):
            views.append({"uid": event.uid})
        elif isinstance(event, QueuedClick):
            clicks.append({"linkId": event.link_id, "linktreeId": event.linktree_id})
        else:
            raise TypeError(f"Unknown queued event: {event!r}")
    return {"views": views, "clicks": clicks}
