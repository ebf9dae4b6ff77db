"""
Audit log service.

Writes and reads audit entries. Writers that must never fail the operation
they describe use ``record_safely``.
"""

import logging
from typing import Any, Dict, List, Optional

from django.db import DatabaseError, transaction

from schoolpsy.core.context import Actor

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only audit trail on one database alias."""

    def __init__(self, using: str = 'default'):
        self.using = using

    @property
    def objects(self):
        return AuditEntry.objects.using(self.using)

    def record(
        self,
        action: str,
        module_key: str,
        actor: Optional[Actor] = None,
        record_id: Optional[int] = None,
        description: str = '',
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Append an audit entry.

        Args:
            action: One of AuditEntry.Action
            module_key: Module the action concerns
            actor: Acting psychologist and request context, None for system actions
            record_id: Result record id for result mutations
            description: Human readable summary
            details: JSON-serialisable details (diff, snapshot, error)

        Returns:
            Created AuditEntry
        """
        entry = AuditEntry(
            module_key=module_key,
            record_id=record_id,
            psychologist_id=actor.psychologist_id if actor else None,
            action=action,
            description=description,
            details=details or {},
            ip_address=actor.ip_address if actor else None,
            user_agent=actor.user_agent if actor else '',
        )
        entry.save(using=self.using)
        return entry

    def record_safely(self, action: str, module_key: str, **kwargs) -> Optional[AuditEntry]:
        """
        Append an audit entry without ever raising.

        A failed write is logged at WARNING and None is returned.
        """
        try:
            with transaction.atomic(using=self.using):
                return self.record(action, module_key, **kwargs)
        except (DatabaseError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write audit entry {action} for {module_key}: {e}")
            return None

    def history(
        self,
        target_key: str,
        limit: int = 20,
        record_id: Optional[int] = None,
        psychologist_id: Optional[int] = None,
    ) -> List[AuditEntry]:
        """
        Latest audit entries of a module, newest first.

        Args:
            target_key: Module key
            limit: Maximum number of entries
            record_id: Restrict to one result record
            psychologist_id: Restrict to one tenant

        Returns:
            List of AuditEntry
        """
        queryset = self.objects.for_module(target_key)
        if record_id is not None:
            queryset = queryset.filter(record_id=record_id)
        if psychologist_id is not None:
            queryset = queryset.for_psychologist(psychologist_id)
        return list(queryset.order_by('-created_at', '-id')[:limit])
