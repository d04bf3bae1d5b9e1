"""
Failure signal emitted at the end of a run that did not fully succeed.

The engine only produces the event; delivering it (mail, chat, paging)
is the job of whatever sink is plugged in.
"""

import json
import logging
from dataclasses import dataclass, asdict
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailureEvent:
    run_id: str
    database_id: str
    status: str
    failing_step: Optional[str]
    error_kind: Optional[str]
    message: Optional[str]

    def as_dict(self) -> dict:
        return asdict(self)


class Notifier:
    """Sink interface for failure events."""

    def notify(self, event: FailureEvent):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes failure events as one JSON log line each."""

    def __init__(self, logger_name: str = 'dumpkeeper.alerts'):
        self.logger = logging.getLogger(logger_name)

    def notify(self, event: FailureEvent):
        level = logging.ERROR if event.status == 'failure' else logging.WARNING
        self.logger.log(level, f"backup_run_failed {json.dumps(event.as_dict(), sort_keys=True)}")
