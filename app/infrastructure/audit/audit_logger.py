"""
AuditLogger - audit trail for allowlist decisions.

Every change to a host's allowlist status (reviewer approve/deny, policy
block) is recorded so operators can reconstruct who let a host through and
why a host was blocked.

Usage:
    from app.infrastructure.audit import audit_logger

    await audit_logger.log_allowlist_decision(
        actor="user-123",
        host="cal.example.com",
        from_status="pending",
        to_status="approved",
    )

Design Principles:
- Write to both database (immutable) and structured logs (searchable)
- Never fail the decision if audit logging fails
"""

import json
from typing import Any
from uuid import UUID

from app.db.helpers import execute_query
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SYSTEM_ACTOR = "system:ssrf_guard"


class AuditLogger:
    """
    Centralized audit logging service.

    Logs allowlist decisions to:
    1. Database (allowlist_audit_log table) - Immutable, queryable
    2. Structured logs (stdout) - Real-time monitoring
    """

    @staticmethod
    async def log_allowlist_decision(
        actor: str | UUID | None,
        host: str,
        from_status: str | None,
        to_status: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record an allowlist status change.

        Args:
            actor: Reviewer user id, or None for automated policy
            host: Host whose status changed
            from_status: Previous status (None when the entry was created)
            to_status: New status
            reason: Free-text reason (block reason, review note)
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if logged successfully, False if failed (never raises)
        """
        if isinstance(actor, UUID):
            actor = str(actor)
        actor = actor or SYSTEM_ACTOR

        logger.info(
            "Audit event",
            audit_action="allowlist_decision",
            actor=actor,
            host=host,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
        )

        try:
            await execute_query(
                """
                INSERT INTO allowlist_audit_log (
                    actor, host, from_status, to_status, reason, metadata, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, NOW())
                """,
                (actor, host, from_status, to_status, reason, _to_json(metadata)),
            )
            return True

        except Exception as e:
            # Never fail the decision because the audit insert failed, but
            # keep enough context to recreate the row by hand.
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "actor": actor,
                    "host": host,
                    "from_status": from_status,
                    "to_status": to_status,
                    "reason": reason,
                },
            )
            return False


def _to_json(metadata: dict[str, Any] | None) -> str | None:
    if metadata is None:
        return None
    return json.dumps(metadata, default=str)


audit_logger = AuditLogger()
