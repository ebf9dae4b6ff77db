"""
Child models.
"""

from django.conf import settings
from django.db import models

from schoolpsy.core.models import TimestampedModel


class Child(TimestampedModel):
    """A child followed by one school psychologist"""

    psychologist = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='children',
        help_text="Psychologist who owns this record"
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    class_name = models.CharField(max_length=20, blank=True)
    birth_date = models.DateField(null=True, blank=True)

    class Meta:
        db_table = 'schoolpsy_children'
        ordering = ['last_name', 'first_name']
        verbose_name = 'Child'
        verbose_name_plural = 'Children'

    def __str__(self):
        return self.full_name

    @property
    def full_name(self) -> str:
        return f"{self.last_name} {self.first_name}".strip()
