import logging
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO"):
    """Configure the root logger once for the whole process"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # Disable Flask's default request logging to keep terminal clean
    logging.getLogger('werkzeug').setLevel(logging.ERROR)


class AuditLogger:
    """Records administrator-triggered analytics actions.

    Every entry goes to the log; when a storage backend is attached it is
    also written to the action_logs collection (best-effort).
    """

    EMOJIS = {
        "FLUSH": "🔄",
        "CLEAR": "🧹",
        "ERROR": "❌",
        "SYSTEM": "⚙️",
    }

    def __init__(self, db=None):
        self.db = db
        self._log = logging.getLogger("linkpulse.audit")

    async def log(self, event_type: str, admin: str, details: str = ""):
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        icon = self.EMOJIS.get(event_type, "📝")

        message = f"{icon} {event_type} by {admin or 'unknown'}"
        if details:
            message += f" | {details}"
        message += f" | {timestamp}"

        if event_type == "ERROR":
            self._log.error(message)
        else:
            self._log.info(message)

        if self.db:
            await self.db.log_action(admin, f"ANALYTICS: {event_type}", details)
