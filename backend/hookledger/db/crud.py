import secrets

from passlib.hash import bcrypt
from sqlalchemy.orm import Session

from hookledger.db import models


def issue_api_key(db: Session, name: str) -> str:
    raw = secrets.token_urlsafe(24)
    key = models.ApiKey(name=name, hashed_key=bcrypt.hash(raw))
    db.add(key)
    db.commit()
    return raw


def verify_api_key(db: Session, raw: str) -> models.ApiKey | None:
    for ak in db.query(models.ApiKey).all():
        if bcrypt.verify(raw, ak.hashed_key):
            return ak
    return None


def list_audit_entries(db: Session, resource_id: str, limit: int = 100):
    return (
        db.query(models.AuditLog)
        .filter_by(resource_id=resource_id)
        .order_by(models.AuditLog.created_at.asc(), models.AuditLog.id.asc())
        .limit(limit)
        .all()
    )
