from vidtube.models.user import User, user_watch_history
from vidtube.models.video import Video
from vidtube.models.subscription import Subscription
from vidtube.models.audit_log import AuditLog

__all__ = [
    "User",
    "user_watch_history",
    "Video",
    "Subscription",
    "AuditLog",
]
