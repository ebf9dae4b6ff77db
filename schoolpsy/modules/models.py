"""
Module System Models

Defines the durable registry of test modules known to the system.
"""

from django.db import models

from schoolpsy.core.models import TimestampedModel

from .manifest import LifecycleState


class InstalledModule(TimestampedModel):
    """
    Registry row of a test module.

    A row exists from registration until uninstall; its status tells whether
    the module is only registered, installed and active, or installed and
    deactivated.
    """
    STATUS_REGISTERED = LifecycleState.REGISTERED.value
    STATUS_ACTIVE = LifecycleState.ACTIVE.value
    STATUS_INACTIVE = LifecycleState.INACTIVE.value

    STATUS_CHOICES = [
        (STATUS_REGISTERED, 'Registered'),
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
    ]

    module_key = models.CharField(
        max_length=100,
        unique=True,
        help_text="Unique module key, equal to the module directory name"
    )

    # Module metadata copied from the manifest
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    version = models.CharField(max_length=20, help_text="Semantic version (e.g., 1.0.0)")
    author = models.CharField(max_length=200, blank=True)
    category = models.CharField(max_length=100)

    table_name = models.CharField(
        max_length=63,
        help_text="Result table owned by this module"
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_REGISTERED
    )

    # State tracking
    installed_at = models.DateTimeField(null=True, blank=True)
    activated_at = models.DateTimeField(null=True, blank=True)
    deactivated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'schoolpsy_modules'
        ordering = ['name']
        indexes = [
            models.Index(fields=['status'], name='schoolpsy_mod_status_idx'),
            models.Index(fields=['category', 'status'], name='schoolpsy_mod_cat_status_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.module_key}@{self.version})"

    @property
    def state(self) -> LifecycleState:
        return LifecycleState(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == self.STATUS_ACTIVE

    @property
    def is_installed(self) -> bool:
        return self.status in (self.STATUS_ACTIVE, self.STATUS_INACTIVE)
