from typing import Any

from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog


class AuditService:
    """Insert-only access to the audit trail.

    ``log`` flushes but never commits: the entry belongs to the caller's
    transaction, so it is persisted or rolled back together with the balance
    change it describes.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        actor_type: str,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        amount: int | None = None,
        reason: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            amount=amount,
            reason=reason,
            payload=payload or {},
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_entries(
        self,
        action: str | None = None,
        entity_id: str | None = None,
        actor_id: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        q = self.db.query(AuditLog)
        if action:
            q = q.filter(AuditLog.action == action)
        if entity_id:
            q = q.filter(AuditLog.entity_id == entity_id)
        if actor_id:
            q = q.filter(AuditLog.actor_id == actor_id)
        total = q.count()
        items = (
            q.order_by(AuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    @staticmethod
    def as_dict(entry: AuditLog) -> dict[str, Any]:
        return {
            "id": entry.id,
            "actor_type": entry.actor_type,
            "actor_id": entry.actor_id,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "amount": entry.amount,
            "reason": entry.reason,
            "payload": entry.payload,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
