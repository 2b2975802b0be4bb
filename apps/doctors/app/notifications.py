from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

_log = logging.getLogger("carebook.notifications")


@dataclass(frozen=True)
class Notice:
    user_id: str
    title: str
    message: str
    kind: str
    appointment_id: Optional[str] = None


class Notifier(Protocol):
    def send(self, notice: Notice) -> None:
        ...


class LoggingNotifier:
    """Delivery lives in another service; here a notice is a log line."""

    def send(self, notice: Notice) -> None:
        _log.info(
            "notification",
            extra={
                "to": notice.user_id,
                "kind": notice.kind,
                "title": notice.title,
                "appointment_id": notice.appointment_id,
            },
        )


def dispatch(notifier: Notifier, notices: Iterable[Notice]) -> int:
    """Best-effort fan-out after commit; failures are logged, never raised."""
    sent = 0
    for n in notices:
        try:
            notifier.send(n)
            sent += 1
        except Exception as e:
            _log.warning("notification failed: %s", e, extra={"to": n.user_id, "kind": n.kind})
    return sent


_NOTIFIER = LoggingNotifier()


def get_notifier() -> Notifier:
    return _NOTIFIER
