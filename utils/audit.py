"""
Security audit trail.

Events come from a closed taxonomy and get a severity from fixed rules.
Writing is best-effort: a failing sink is logged and swallowed so it never
aborts or slows down the request that triggered the event. Details are
redacted before they reach any sink.
"""
from __future__ import annotations

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app, g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.audit_log import AuditLog
from models.base_model import utcnow
from utils.client import client_ip, user_agent

AUDIT_LOGGER_NAME = "school_api.audit"
REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "authorization")

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    PASSWORD_CHANGE = "password_change"
    # Authorization
    ACCESS_DENIED = "access_denied"
    PERMISSION_ESCALATION = "permission_escalation"
    # Data
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    SCHOOL_CREATED = "school_created"
    SCHOOL_UPDATED = "school_updated"
    SCHOOL_DELETED = "school_deleted"
    # Security
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    TOKEN_REVOKED = "token_revoked"
    INVALID_TOKEN = "invalid_token"
    # System
    DATA_EXPORT = "data_export"
    BULK_OPERATION = "bulk_operation"
    CONFIG_CHANGE = "config_change"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


AUTH_EVENTS = {
    "login": AuditEventType.LOGIN_SUCCESS,
    "logout": AuditEventType.LOGOUT,
    "token_refresh": AuditEventType.TOKEN_REFRESH,
    "password_change": AuditEventType.PASSWORD_CHANGE,
}

_AUTHENTICATION = {
    AuditEventType.LOGIN_SUCCESS,
    AuditEventType.LOGIN_FAILED,
    AuditEventType.LOGOUT,
    AuditEventType.TOKEN_REFRESH,
    AuditEventType.PASSWORD_CHANGE,
}

_FIXED_SEVERITY = {
    AuditEventType.PASSWORD_CHANGE: AuditSeverity.MEDIUM,
    AuditEventType.ACCESS_DENIED: AuditSeverity.HIGH,
    AuditEventType.PERMISSION_ESCALATION: AuditSeverity.CRITICAL,
    AuditEventType.USER_CREATED: AuditSeverity.MEDIUM,
    AuditEventType.USER_UPDATED: AuditSeverity.MEDIUM,
    AuditEventType.USER_DELETED: AuditSeverity.HIGH,
    AuditEventType.SCHOOL_CREATED: AuditSeverity.MEDIUM,
    AuditEventType.SCHOOL_UPDATED: AuditSeverity.MEDIUM,
    AuditEventType.SCHOOL_DELETED: AuditSeverity.HIGH,
    AuditEventType.RATE_LIMIT_EXCEEDED: AuditSeverity.HIGH,
    AuditEventType.SUSPICIOUS_ACTIVITY: AuditSeverity.HIGH,
    AuditEventType.TOKEN_REVOKED: AuditSeverity.MEDIUM,
    AuditEventType.INVALID_TOKEN: AuditSeverity.MEDIUM,
    AuditEventType.DATA_EXPORT: AuditSeverity.MEDIUM,
    AuditEventType.BULK_OPERATION: AuditSeverity.HIGH,
    AuditEventType.CONFIG_CHANGE: AuditSeverity.HIGH,
}

_LOG_LEVELS = {
    AuditSeverity.LOW: logging.INFO,
    AuditSeverity.MEDIUM: logging.INFO,
    AuditSeverity.HIGH: logging.WARNING,
    AuditSeverity.CRITICAL: logging.ERROR,
}


def severity_for(event_type: AuditEventType, success: bool = True) -> AuditSeverity:
    """
    Fixed severity rules: any failed authentication event is high, a
    successful password change is medium, other successful authentication
    events are low; everything else has a fixed tier.
    """
    if event_type in _AUTHENTICATION:
        if not success or event_type is AuditEventType.LOGIN_FAILED:
            return AuditSeverity.HIGH
        return _FIXED_SEVERITY.get(event_type, AuditSeverity.LOW)
    return _FIXED_SEVERITY.get(event_type, AuditSeverity.MEDIUM)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Recursively replace values stored under credential-like keys."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and _is_sensitive(k) else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class AuditEntry:
    id: str
    timestamp: datetime
    event_type: AuditEventType
    severity: AuditSeverity
    ip_address: str
    user_agent: str
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    school_id: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        d["event_type"] = self.event_type.value
        d["severity"] = self.severity.value
        return d


class AuditLogger:
    """
    Append-only recorder with two sinks:
    - "log": one JSON line per event on the school_api.audit logger
    - "database": one AuditLog row per event, written in its own session so it
      never commits (or rolls back) the caller's unit of work
    """

    def __init__(
        self,
        storage=None,
        sinks: Iterable[str] = ("log", "database"),
        async_writes: bool = False,
        audit_logger: Optional[logging.Logger] = None,
    ):
        self._storage = storage
        self._sinks = frozenset(sinks)
        unknown = self._sinks - {"log", "database"}
        if unknown:
            raise ValueError(f"Unknown audit sinks: {sorted(unknown)}")
        if "database" in self._sinks and storage is None:
            raise ValueError("The database audit sink needs a storage")
        self._log = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)
        self._executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit") if async_writes else None
        )

    # -- writing ---------------------------------------------------------

    def log(
        self,
        event_type: AuditEventType,
        severity: Optional[AuditSeverity] = None,
        *,
        success: bool = True,
        actor=None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_role: Optional[str] = None,
        school_id: Optional[str] = None,
        ip_address: str = "unknown",
        user_agent: str = "Unknown",
        resource: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> AuditEntry:
        if actor is not None:
            user_id = user_id or actor.user_id
            user_email = user_email or actor.email
            user_role = user_role or getattr(actor.role, "value", actor.role)
            school_id = school_id or actor.tenant_id
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=utcnow(),
            event_type=AuditEventType(event_type),
            severity=AuditSeverity(severity) if severity else severity_for(AuditEventType(event_type), success),
            ip_address=ip_address or "unknown",
            user_agent=(user_agent or "Unknown")[:512],
            success=success,
            details=redact(details or {}),
            user_id=user_id,
            user_email=user_email,
            user_role=getattr(user_role, "value", user_role),
            school_id=school_id,
            resource=resource,
            action=action,
            error_message=error_message,
        )
        self._dispatch(entry)
        return entry

    def _dispatch(self, entry: AuditEntry) -> None:
        if self._executor is None:
            self._write(entry)
            return
        try:
            self._executor.submit(self._write, entry)
        except RuntimeError:
            # executor already shut down (app teardown); fall back to writing inline
            self._write(entry)

    def _write(self, entry: AuditEntry) -> None:
        if "log" in self._sinks:
            try:
                self._log.log(_LOG_LEVELS[entry.severity], json.dumps(entry.to_dict(), default=str))
            except Exception:
                logger.warning("Audit log sink failed for %s", entry.event_type.value, exc_info=True)
        if "database" in self._sinks:
            try:
                self._write_row(entry)
            except SQLAlchemyError:
                logger.warning("Audit database sink failed for %s", entry.event_type.value, exc_info=True)

    def _write_row(self, entry: AuditEntry) -> None:
        with Session(self._storage.engine) as session:
            session.add(AuditLog(
                id=entry.id,
                created_at=entry.timestamp,
                updated_at=entry.timestamp,
                event_type=entry.event_type.value,
                severity=entry.severity.value,
                user_id=entry.user_id,
                user_email=entry.user_email,
                user_role=entry.user_role,
                school_id=entry.school_id,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                resource=entry.resource,
                action=entry.action,
                details=entry.details,
                success=entry.success,
                error_message=entry.error_message,
            ))
            session.commit()

    # -- helpers ---------------------------------------------------------

    def log_auth(self, kind: str, *, success: bool, **context) -> AuditEntry:
        """kind is one of: login, logout, token_refresh, password_change."""
        event_type = AUTH_EVENTS[kind]
        if kind == "login" and not success:
            event_type = AuditEventType.LOGIN_FAILED
        context.setdefault("action", kind.upper())
        return self.from_request(event_type, success=success, **context)

    def log_security(self, event_type: AuditEventType, *, severity: Optional[AuditSeverity] = None,
                     **context) -> AuditEntry:
        return self.from_request(event_type, severity or AuditSeverity.HIGH, success=False, **context)

    def log_data_event(self, action: str, resource: str, *, resource_id: Optional[str] = None,
                       old_data: Optional[dict] = None, new_data: Optional[dict] = None,
                       success: bool = True, **context) -> AuditEntry:
        """Data mutation events, e.g. log_data_event("update", "users", resource_id=...)."""
        kind = "SCHOOL" if "school" in resource else "USER"
        verb = {"create": "CREATED", "update": "UPDATED", "delete": "DELETED"}[action]
        details = {"resource_id": resource_id}
        if old_data is not None:
            details["old_data"] = old_data
        if new_data is not None:
            details["new_data"] = new_data
        return self.from_request(
            AuditEventType[f"{kind}_{verb}"],
            success=success,
            resource=resource,
            action=action.upper(),
            details=details,
            **context,
        )

    def from_request(self, event_type: AuditEventType, severity: Optional[AuditSeverity] = None,
                     **context) -> AuditEntry:
        """Fill client address, user agent, path, method and actor from the current request."""
        if has_request_context():
            context.setdefault("ip_address", client_ip())
            context.setdefault("user_agent", user_agent())
            context.setdefault("resource", request.path)
            context.setdefault("action", request.method)
            if "actor" not in context and not context.get("user_id"):
                context["actor"] = g.get("principal")
        return self.log(event_type, severity, **context)

    # -- reading ---------------------------------------------------------

    def recent(self, limit: int = 100, school_id: Optional[str] = None,
               event_type: Optional[str] = None, user_id: Optional[str] = None) -> List[AuditLog]:
        if self._storage is None:
            return []
        with Session(self._storage.engine, expire_on_commit=False) as session:
            query = session.query(AuditLog)
            if school_id is not None:
                query = query.filter(AuditLog.school_id == school_id)
            if event_type:
                query = query.filter(AuditLog.event_type == event_type)
            if user_id:
                query = query.filter(AuditLog.user_id == user_id)
            return query.order_by(AuditLog.created_at.desc()).limit(limit).all()

    def flush(self) -> None:
        """Wait for queued asynchronous writes."""
        if self._executor is not None:
            self._executor.submit(lambda: None).result()

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


def get_audit_logger() -> AuditLogger:
    return current_app.extensions["audit_logger"]
