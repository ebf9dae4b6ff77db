"""
Audit trail models.
"""

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from .exceptions import AuditEntryImmutable


class AuditEntryQuerySet(models.QuerySet):
    """QuerySet for AuditEntry with the filters history lookups need."""

    def for_module(self, module_key: str) -> 'AuditEntryQuerySet':
        return self.filter(module_key=module_key)

    def for_record(self, module_key: str, record_id: int) -> 'AuditEntryQuerySet':
        return self.filter(module_key=module_key, record_id=record_id)

    def for_psychologist(self, psychologist_id: int) -> 'AuditEntryQuerySet':
        return self.filter(psychologist_id=psychologist_id)

    def for_action(self, action: str) -> 'AuditEntryQuerySet':
        return self.filter(action=action)

    def failures(self) -> 'AuditEntryQuerySet':
        return self.filter(action__endswith='_error')

    def delete(self):
        raise AuditEntryImmutable("Audit entries cannot be deleted")

    def update(self, **kwargs):
        raise AuditEntryImmutable("Audit entries cannot be modified")


class AuditEntry(models.Model):
    """
    One audit trail entry.

    Entries are append-only: saving an existing row or deleting any row
    raises AuditEntryImmutable.
    """

    class Action(models.TextChoices):
        # Result mutations
        CREATE = 'create', 'Create'
        UPDATE = 'update', 'Update'
        DELETE = 'delete', 'Delete'

        # Module lifecycle
        REGISTER = 'register', 'Register'
        INSTALL = 'install', 'Install'
        ACTIVATE = 'activate', 'Activate'
        DEACTIVATE = 'deactivate', 'Deactivate'
        UNINSTALL = 'uninstall', 'Uninstall'

        # Failed lifecycle transitions
        REGISTER_ERROR = 'register_error', 'Register Error'
        INSTALL_ERROR = 'install_error', 'Install Error'
        ACTIVATE_ERROR = 'activate_error', 'Activate Error'
        DEACTIVATE_ERROR = 'deactivate_error', 'Deactivate Error'
        UNINSTALL_ERROR = 'uninstall_error', 'Uninstall Error'

    module_key = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Module the action concerns"
    )
    record_id = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Result record id for result mutations"
    )
    psychologist_id = models.BigIntegerField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Acting psychologist (tenant)"
    )

    action = models.CharField(max_length=30, choices=Action.choices, db_index=True)
    description = models.TextField(blank=True)
    details = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    # Request context
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = AuditEntryQuerySet.as_manager()

    class Meta:
        db_table = 'schoolpsy_audit_entries'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['module_key', 'record_id'], name='schoolpsy_aud_record_idx'),
            models.Index(fields=['psychologist_id', 'created_at'], name='schoolpsy_aud_tenant_idx'),
        ]
        verbose_name = 'Audit Entry'
        verbose_name_plural = 'Audit Entries'

    def __str__(self):
        target = f"{self.module_key}#{self.record_id}" if self.record_id else self.module_key
        return f"{self.action} on {target} at {self.created_at}"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise AuditEntryImmutable("Audit entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AuditEntryImmutable("Audit entries cannot be deleted")

    @property
    def is_failure(self) -> bool:
        return self.action.endswith('_error')
