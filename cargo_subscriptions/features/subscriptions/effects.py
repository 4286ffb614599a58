"""
Post-commit side effects.

Notifications and audit entries are queued while the primary transaction is
open and executed only after it commits, in queue order. Each effect is
isolated: a failure is logged and the remaining effects still run. Nothing
here can undo the committed mutation.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from cargo_subscriptions.features.audit.service import record_audit
from cargo_subscriptions.features.notifications.service import CARGO_OWNER_USER_TYPE, emit_notification
from cargo_subscriptions.features.subscriptions.lifecycle import NotificationDraft

logger = logging.getLogger(__name__)


class PostCommitEffects:
    def __init__(self, operation: str):
        self.operation = operation
        self._effects: List[Tuple[str, Callable[..., Any], Dict[str, Any]]] = []
        self.failed: List[str] = []

    def __len__(self) -> int:
        return len(self._effects)

    def add(self, name: str, fn: Callable[..., Any], **kwargs) -> None:
        self._effects.append((name, fn, kwargs))

    def notify_user(self, user_id: str, draft: NotificationDraft, *, subscription_id: Optional[str] = None, now=None) -> None:
        self.add(
            f"notify:{draft.type}",
            emit_notification,
            user_id=user_id,
            user_type=CARGO_OWNER_USER_TYPE,
            type=draft.type,
            title=draft.title,
            message=draft.message,
            data=draft.data,
            priority=draft.priority,
            subscription_id=subscription_id,
            now=now,
        )

    def notify(self, **kwargs) -> None:
        self.add(f"notify:{kwargs.get('type')}", emit_notification, **kwargs)

    def audit(self, **kwargs) -> None:
        self.add(f"audit:{kwargs.get('action')}", record_audit, **kwargs)

    def run(self) -> List[str]:
        """Execute queued effects once; returns the names of those that failed."""
        pending, self._effects = self._effects, []
        for name, fn, kwargs in pending:
            try:
                fn(**kwargs)
            except Exception as exc:
                self.failed.append(name)
                logger.warning(
                    "[effects] post-commit effect failed",
                    exc_info=True,
                    extra={"operation": self.operation, "effect": name, "error": str(exc)},
                )
        return list(self.failed)
