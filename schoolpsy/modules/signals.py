"""
Signals of the test module system.

All signals are sent after the surrounding transaction commits; ``sender`` is
the service that performed the change.
"""

from django.dispatch import Signal


# Lifecycle
module_registered = Signal()  # Arguments: module_key, descriptor, actor
module_installed = Signal()  # Arguments: module_key, descriptor, actor, table_created
module_activated = Signal()  # Arguments: module_key, descriptor, actor
module_deactivated = Signal()  # Arguments: module_key, actor
module_uninstalled = Signal()  # Arguments: module_key, actor, options, backup_path

# Results
result_created = Signal()  # Arguments: module_key, record_id, record, actor
result_updated = Signal()  # Arguments: module_key, record_id, record, changes, actor
result_deleted = Signal()  # Arguments: module_key, record_id, snapshot, actor
