"""
auth/audit.py -- Audit trail recorder.

AuditRecorder is the only path from the service to the audit sink. It stamps
nothing and decides nothing about policy: a failed write is reported to the
caller as AuditWriteError, and AuthService decides (audit_fail_open) whether
the primary operation continues.

Every recorded event is also written to the "identitycore.audit" logger so
that an operator tailing logs sees the same trail the database holds.
"""

from __future__ import annotations

import logging

from auth.errors import AuditWriteError
from auth.models import AuditEvent
from auth.store import AuditSink

logger = logging.getLogger("identitycore.audit")


class AuditRecorder:
    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(self, event: AuditEvent) -> AuditEvent:
        """Append event to the sink. Raises AuditWriteError if it cannot be persisted."""
        try:
            saved = self.sink.append(event)
        except AuditWriteError:
            raise
        except Exception as exc:
            # Sinks other than AuthStore may raise their own error types.
            raise AuditWriteError(f"could not persist {event.action.value} event") from exc
        logger.info(
            "audit action=%s identity=%s ip=%s",
            saved.action.value,
            saved.identity_id,
            saved.ip_address or "-",
        )
        return saved
