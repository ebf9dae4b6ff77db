"""
Module Registry

Durable record of the modules known to the system. Backs the catalog's
notion of installation state and the lifecycle manager's transitions.
"""

import logging
from typing import List, Optional, Tuple

from django.db import IntegrityError, transaction

from .manifest import LifecycleState, ModuleDescriptor
from .models import InstalledModule
from .storage import storage_guard

logger = logging.getLogger(__name__)


# Registry columns refreshed from the manifest on every scan. The table name
# of an installed module only changes through uninstall and install.
SYNCED_FIELDS = ('name', 'description', 'version', 'author', 'category', 'table_name')


class ModuleRegistry:
    """
    Persistent registry of test modules.

    Every method works on one database alias and touches only the registry
    rows it names; result tables are never locked from here.
    """

    def __init__(self, using: str = 'default'):
        self.using = using

    @property
    def objects(self):
        return InstalledModule.objects.using(self.using)

    # Queries

    def get(self, module_key: str) -> Optional[InstalledModule]:
        with storage_guard(f"reading registry row {module_key}"):
            return self.objects.filter(module_key=module_key).first()

    def get_for_update(self, module_key: str) -> Optional[InstalledModule]:
        """
        Get a registry row locked until the surrounding transaction ends.
        Must be called inside ``transaction.atomic``.
        """
        with storage_guard(f"locking registry row {module_key}"):
            return self.objects.select_for_update().filter(module_key=module_key).first()

    def all(self) -> List[InstalledModule]:
        with storage_guard("reading registry"):
            return list(self.objects.all())

    def active(self) -> List[InstalledModule]:
        with storage_guard("reading registry"):
            return list(self.objects.filter(status=InstalledModule.STATUS_ACTIVE))

    def state(self, module_key: str) -> Optional[LifecycleState]:
        """Registry state of a module, None when it has no registry row"""
        row = self.get(module_key)
        return row.state if row else None

    # Mutations

    def upsert(self, descriptor: ModuleDescriptor) -> Tuple[InstalledModule, bool, bool]:
        """
        Create or refresh the registry row of a module.

        Existing rows keep their status; only manifest metadata is refreshed,
        and only when it differs, so repeated calls leave the row untouched.
        Installed rows keep the table their data lives in.

        Args:
            descriptor: Validated module descriptor

        Returns:
            Tuple of (row, created, changed)
        """
        values = self._values(descriptor)

        with storage_guard(f"registering module {descriptor.key}"):
            with transaction.atomic(using=self.using):
                row = self.get_for_update(descriptor.key)

                if row is None:
                    try:
                        with transaction.atomic(using=self.using):
                            row = self.objects.create(module_key=descriptor.key, **values)
                    except IntegrityError:
                        # Registered concurrently by another process
                        row = self.get_for_update(descriptor.key)
                    else:
                        logger.info(f"Registered module {descriptor.key} v{descriptor.version}")
                        return row, True, True

                if row.is_installed and row.table_name != values['table_name']:
                    logger.warning(
                        f"Manifest of installed module {descriptor.key} names table "
                        f"{values['table_name']}, keeping {row.table_name} until it is reinstalled"
                    )
                    values['table_name'] = row.table_name

                changed = [name for name, value in values.items() if getattr(row, name) != value]
                if not changed:
                    return row, False, False

                for name in changed:
                    setattr(row, name, values[name])
                row.save(update_fields=changed + ['updated_at'])

        logger.info(f"Refreshed registry metadata of {descriptor.key}: {', '.join(changed)}")
        return row, False, True

    def set_status(self, row: InstalledModule, status: str, **timestamps) -> InstalledModule:
        """Persist a status change together with its timestamp fields"""
        row.status = status
        for name, value in timestamps.items():
            setattr(row, name, value)

        with storage_guard(f"updating registry row {row.module_key}"):
            row.save(update_fields=['status', 'updated_at'] + list(timestamps))
        return row

    def remove(self, row: InstalledModule) -> None:
        with storage_guard(f"deleting registry row {row.module_key}"):
            row.delete()

    @staticmethod
    def _values(descriptor: ModuleDescriptor) -> dict:
        return {name: getattr(descriptor, name) for name in SYNCED_FIELDS}
