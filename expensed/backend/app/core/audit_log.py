# backend/app/core/audit_log.py
"""
Billing audit trail.

``AuditLogRecorder.record`` stages an entry in the caller's transaction so the
entry commits or rolls back together with the mutation it describes.
``record_failure`` rolls the failed operation back and commits an entry
describing the attempt on its own.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import AuditAction
from app.core.logging import get_logger
from app.db.models.audit_log import AuditLogEntry
from app.db.models.organization import Organization

logger = get_logger(__name__)


@dataclass
class AuditContext:
    """Who is acting and from where"""
    performed_by: Optional[str] = None
    is_super_admin: bool = False
    is_system: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def system(cls) -> "AuditContext":
        return cls(is_system=True)


@dataclass
class AuditQuery:
    action: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    organization: Optional[str] = None  # case-insensitive substring of the organization name
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class AuditRecord:
    """Read-only projection handed to reporting"""
    id: str
    created_at: datetime
    action: str
    action_details: Dict[str, Any]
    amount_cents: Optional[int]
    organization_id: Optional[str]
    organization_name: Optional[str]
    performed_by: Optional[str]
    is_super_admin: bool
    is_system: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditLogRecorder:
    """Append-only writer and read-only query over subscription_audit_log"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        action: Union[AuditAction, str],
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        organization_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> AuditLogEntry:
        context = context or AuditContext.system()
        entry = AuditLogEntry(
            organization_id=organization_id,
            subscription_id=subscription_id,
            action=action.value if isinstance(action, Enum) else action,
            action_details=details or {},
            amount_cents=amount_cents,
            performed_by=context.performed_by,
            is_super_admin=context.is_super_admin,
            is_system=context.is_system,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=datetime.utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        logger.info(
            f"Audit {entry.action}",
            extra={"organization_id": organization_id, "user_id": context.performed_by, "action": entry.action},
        )
        return entry

    async def query(self, filters: Optional[AuditQuery] = None) -> List[AuditRecord]:
        filters = filters or AuditQuery()
        query = (
            select(AuditLogEntry, Organization.name)
            .outerjoin(Organization, AuditLogEntry.organization_id == Organization.id)
            .order_by(AuditLogEntry.created_at.desc())
        )
        if filters.action:
            query = query.where(AuditLogEntry.action == filters.action)
        if filters.date_from:
            query = query.where(AuditLogEntry.created_at >= filters.date_from)
        if filters.date_to:
            query = query.where(AuditLogEntry.created_at <= filters.date_to)
        if filters.organization:
            query = query.where(Organization.name.ilike(f"%{filters.organization}%"))

        result = await self.session.execute(query.offset(filters.offset).limit(filters.limit))
        return [
            AuditRecord(
                id=entry.id,
                created_at=entry.created_at,
                action=entry.action,
                action_details=dict(entry.action_details or {}),
                amount_cents=entry.amount_cents,
                organization_id=entry.organization_id,
                organization_name=organization_name,
                performed_by=entry.performed_by,
                is_super_admin=entry.is_super_admin,
                is_system=entry.is_system,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
            )
            for entry, organization_name in result.all()
        ]

    async def record_failure(
        self,
        action: Union[AuditAction, str],
        error: Exception,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        organization_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> None:
        """
        Roll back the failed operation, then commit an entry describing it.

        An ``organization_id`` that names no stored organization is kept in
        the details instead of the entry's organization column. The caller
        re-raises the original error; a failure to write this entry is only
        logged so it never replaces that error.
        """
        await self.session.rollback()
        failure_details = dict(details or {})
        failure_details["error"] = str(error)
        failure_details["error_type"] = error.__class__.__name__
        try:
            if organization_id is not None and not await self._organization_exists(organization_id):
                failure_details["organization_id"] = organization_id
                organization_id = None
            await self.record(
                action,
                details=failure_details,
                context=context,
                organization_id=organization_id,
                amount_cents=amount_cents,
            )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception(
                f"Failed to audit failed action: {error}",
                extra={"organization_id": organization_id, "action": str(action)},
            )

    async def _organization_exists(self, organization_id: Any) -> bool:
        result = await self.session.execute(
            select(Organization.id).where(Organization.id == str(organization_id))
        )
        return result.scalar_one_or_none() is not None
