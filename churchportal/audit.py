"""
Audit logging module for the church portal.
Append-only entries with a signature hash for tamper detection.
"""
import hashlib
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from churchportal.models import AuditLog


def _signature(user_id: int, action: str, file_id: Optional[int], ip_address: Optional[str],
               details: Optional[str], timestamp: datetime) -> str:
    signature_data = f"{user_id}:{action}:{file_id}:{ip_address}:{details}:{timestamp.isoformat()}"
    return hashlib.sha256(signature_data.encode('utf-8')).hexdigest()


def log_action(db: Session, user_id: int, action: str, file_id: Optional[int] = None,
               ip_address: Optional[str] = None, details: Optional[str] = None) -> AuditLog:
    """
    Create an append-only audit log entry.
    Generates signature hash for immutability verification.
    """
    timestamp = datetime.utcnow().replace(microsecond=0)

    log_entry = AuditLog(
        user_id=user_id,
        file_id=file_id,
        action=action,
        details=details,
        ip_address=ip_address,
        timestamp=timestamp,
        signature_hash=_signature(user_id, action, file_id, ip_address, details, timestamp),
    )

    db.add(log_entry)
    db.commit()
    db.refresh(log_entry)

    return log_entry


def verify_log_integrity(log_entry: AuditLog) -> bool:
    """Recalculate the signature hash of an entry and compare with the stored value."""
    calculated_hash = _signature(log_entry.user_id, log_entry.action, log_entry.file_id,
                                 log_entry.ip_address, log_entry.details, log_entry.timestamp)
    return calculated_hash == log_entry.signature_hash


def get_audit_logs(db: Session, user_id: Optional[int] = None, action: Optional[str] = None,
                   file_id: Optional[int] = None, limit: int = 100, offset: int = 0) -> List[dict]:
    """Retrieve audit logs, newest first, with optional filtering."""
    query = db.query(AuditLog)

    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    if action:
        query = query.filter(AuditLog.action == action)
    if file_id:
        query = query.filter(AuditLog.file_id == file_id)

    logs = query.order_by(AuditLog.timestamp.desc(), AuditLog.log_id.desc()).limit(limit).offset(offset).all()

    return [
        {
            'log_id': log.log_id,
            'usuario_id': log.user_id,
            'archivo_id': log.file_id,
            'action': log.action,
            'details': log.details,
            'ip_address': log.ip_address,
            'timestamp': log.timestamp.isoformat(),
            'signature_hash': log.signature_hash,
            'verified': verify_log_integrity(log),
        }
        for log in logs
    ]
