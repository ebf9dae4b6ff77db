"""
Base models for schoolpsy.

These abstract models provide common functionality that can be inherited
by the models of every schoolpsy app.
"""

from django.db import models


class TimestampedModel(models.Model):
    """
    Abstract model that provides created and updated timestamp fields.
    
    These fields are automatically managed and provide audit trail capabilities.
    """
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)
    
    class Meta:
        abstract = True
        ordering = ['-created_at']
