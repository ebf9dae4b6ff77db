"""
Module Lifecycle Manager

Drives a module through discovered -> registered -> active <-> inactive ->
uninstalled. Every transition runs in one transaction on the registry
database; audit entries, signals and cache purges follow only after commit.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone
from packaging.version import InvalidVersion, Version

from schoolpsy.audit.services import AuditLog
from schoolpsy.core.context import Actor

from . import signals
from .catalog import ModuleCatalog
from .conf import ModuleSystemConfig
from .exceptions import (
    BackupError, DependencyUnmetError, InconsistentState, ModuleError,
    ModuleInstallationError, ModuleNotFoundError, ModuleStateError,
)
from .factory import ModuleInstanceFactory
from .manifest import LifecycleState, ModuleDescriptor
from .models import InstalledModule
from .registry import ModuleRegistry
from .storage import COMMON_COLUMNS, ResultTableStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UninstallOptions:
    """What uninstall does besides removing the registry row"""
    delete_data: bool = False
    backup_files: bool = False
    delete_files: bool = False


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a lifecycle transition"""
    module_key: str
    action: str
    state: Optional[LifecycleState]
    changed: bool = True
    table_created: bool = False
    backup_path: Optional[Path] = None


class LifecycleManager:
    """
    Lifecycle state machine of test modules.

    Transitions repeated on a module that is already in the target state
    succeed without side effects, which is how the loser of two concurrent
    installs reports success.
    """

    def __init__(
        self,
        config: ModuleSystemConfig,
        catalog: ModuleCatalog,
        registry: ModuleRegistry,
        storage: ResultTableStorage,
        factory: ModuleInstanceFactory,
        audit: AuditLog,
    ):
        self.config = config
        self.catalog = catalog
        self.registry = registry
        self.storage = storage
        self.factory = factory
        self.audit = audit

    @property
    def using(self) -> str:
        return self.registry.using

    # Queries

    def state(self, module_key: str) -> LifecycleState:
        """
        Current lifecycle state of a module.

        Raises:
            ModuleNotFoundError: If the module is neither registered nor on disk
        """
        row = self.registry.get(module_key)
        if row is not None:
            return row.state
        return self.catalog.get(module_key).state

    def check_dependencies(self, descriptor: ModuleDescriptor) -> None:
        """
        Verify the host satisfies the module's requirements.

        Raises:
            DependencyUnmetError: Listing every unmet requirement
        """
        deps = descriptor.dependencies
        unmet = []

        if deps.core and not self._version_satisfied(self.config.core_version, deps.core):
            unmet.append(f"core >= {deps.core} required, have {self.config.core_version}")

        if deps.runtime and not self._version_satisfied(self.config.runtime_version, deps.runtime):
            unmet.append(f"runtime >= {deps.runtime} required, have {self.config.runtime_version}")

        missing = sorted(set(deps.capabilities) - self.config.capabilities)
        if missing:
            unmet.append(f"missing capabilities: {', '.join(missing)}")

        if unmet:
            raise DependencyUnmetError(descriptor.key, unmet)

    def check_consistency(self) -> List[InconsistentState]:
        """
        Find installed modules whose result table does not exist.

        Such rows are left behind by an install that was killed midway on a
        backend without transactional DDL, or by tables dropped outside the
        engine. Nothing is repaired; every finding is logged at ERROR and
        returned.
        """
        issues = []
        for row in self.registry.all():
            if not row.is_installed:
                continue
            if self.storage.table_exists(row.table_name):
                continue

            issue = InconsistentState(
                row.module_key,
                row.table_name,
                f"registry marks the module {row.status} but table {row.table_name} does not exist",
            )
            logger.error(f"Consistency check: {issue}")
            issues.append(issue)

        return issues

    # Transitions

    def register(self, module_key: str, actor: Optional[Actor] = None) -> TransitionResult:
        """Validate a module on disk and add it to the registry"""
        with self._failures('register', module_key, actor):
            descriptor = self.catalog.get(module_key)
            with transaction.atomic(using=self.using):
                row, created, _ = self.registry.upsert(descriptor)
                if created:
                    self._registered(descriptor, actor)

        return TransitionResult(module_key, 'register', row.state, changed=created)

    def install(self, module_key: str, actor: Optional[Actor] = None) -> TransitionResult:
        """
        Install and activate a registered module.

        Dependencies are checked before anything is written. The result table
        is provisioned and the registry flipped to active in one transaction.

        Raises:
            DependencyUnmetError: If the host does not satisfy the module
            ModuleStateError: If the module is installed but inactive
            ModuleInstallationError: If provisioning fails or breaks the table contract
            ModuleLoadError: If the module behaviour cannot be built
        """
        with self._failures('install', module_key, actor):
            descriptor = self.catalog.get(module_key)
            self.check_dependencies(descriptor)

            with transaction.atomic(using=self.using):
                row = self.registry.get_for_update(module_key)
                if row is not None and row.is_installed:
                    return self._already_installed(row)

                row, created, _ = self.registry.upsert(descriptor)
                if created:
                    self._registered(descriptor, actor)
                elif row.is_installed:
                    # Another installer committed between the lock and the upsert
                    return self._already_installed(row)

                table_created = self.storage.create_table(
                    descriptor.table_name,
                    create_script=descriptor.storage.create_script,
                    columns=descriptor.storage.columns,
                    module_path=descriptor.path,
                )
                self._verify_table_contract(descriptor)

                self.factory.invalidate(module_key)
                self.factory.create(descriptor)

                now = timezone.now()
                self.registry.set_status(
                    row, InstalledModule.STATUS_ACTIVE,
                    installed_at=now, activated_at=now, deactivated_at=None,
                )

                self._after_commit(
                    'install', module_key, actor,
                    f"Installed module {descriptor}",
                    details={'version': descriptor.version, 'table': descriptor.table_name,
                             'table_created': table_created},
                    signal=signals.module_installed,
                    descriptor=descriptor, table_created=table_created,
                )

        return TransitionResult(module_key, 'install', LifecycleState.ACTIVE, table_created=table_created)

    def activate(self, module_key: str, actor: Optional[Actor] = None) -> TransitionResult:
        """
        Re-activate an inactive module. The result table is not re-provisioned.

        Raises:
            ModuleStateError: If the module is not installed
            InconsistentState: If the result table has disappeared
        """
        with self._failures('activate', module_key, actor):
            with transaction.atomic(using=self.using):
                row = self._locked_row(module_key)

                if row.is_active:
                    return TransitionResult(module_key, 'activate', LifecycleState.ACTIVE, changed=False)
                if row.status == InstalledModule.STATUS_REGISTERED:
                    raise ModuleStateError(f"Module {module_key} is not installed; install it first")

                if not self.storage.table_exists(row.table_name):
                    raise InconsistentState(
                        module_key, row.table_name,
                        f"cannot activate, table {row.table_name} does not exist",
                    )

                descriptor = self.catalog.get(module_key)
                self.factory.invalidate(module_key)
                self.factory.create(descriptor)

                self.registry.set_status(
                    row, InstalledModule.STATUS_ACTIVE,
                    activated_at=timezone.now(), deactivated_at=None,
                )

                self._after_commit(
                    'activate', module_key, actor,
                    f"Activated module {descriptor}",
                    signal=signals.module_activated,
                    descriptor=descriptor,
                )

        return TransitionResult(module_key, 'activate', LifecycleState.ACTIVE)

    def deactivate(self, module_key: str, actor: Optional[Actor] = None) -> TransitionResult:
        """Deactivate an active module, keeping its data"""
        with self._failures('deactivate', module_key, actor):
            with transaction.atomic(using=self.using):
                row = self._locked_row(module_key)

                if row.status == InstalledModule.STATUS_INACTIVE:
                    return TransitionResult(module_key, 'deactivate', LifecycleState.INACTIVE, changed=False)
                if row.status == InstalledModule.STATUS_REGISTERED:
                    raise ModuleStateError(f"Module {module_key} is not installed")

                self.registry.set_status(
                    row, InstalledModule.STATUS_INACTIVE, deactivated_at=timezone.now(),
                )

                transaction.on_commit(lambda: self.factory.invalidate(module_key), using=self.using)
                self._after_commit(
                    'deactivate', module_key, actor,
                    f"Deactivated module {row}",
                    signal=signals.module_deactivated,
                )

        return TransitionResult(module_key, 'deactivate', LifecycleState.INACTIVE)

    def uninstall(self, module_key: str, actor: Optional[Actor] = None,
                  options: Optional[UninstallOptions] = None) -> TransitionResult:
        """
        Remove a module from the registry.

        The backup (if requested) is taken first; the registry row deletion
        and the optional table drop run in the same transaction, so a failed
        backup or drop leaves the module installed. Module files are deleted
        after commit on a best-effort basis.

        Raises:
            ModuleStateError: If the module is not installed
            BackupError: If the requested backup cannot be written
        """
        options = options or UninstallOptions()
        backup_path = None

        with self._failures('uninstall', module_key, actor):
            with transaction.atomic(using=self.using):
                row = self._locked_row(module_key)
                if not row.is_installed:
                    raise ModuleStateError(f"Module {module_key} is not installed")

                module_dir = self._module_directory(module_key)
                if options.backup_files:
                    backup_path = self._backup(module_key, module_dir)

                table_name = row.table_name
                self.registry.remove(row)
                if options.delete_data:
                    self.storage.drop_table(table_name)

                def purge():
                    self.factory.invalidate(module_key)
                    self.catalog.invalidate_cache()

                transaction.on_commit(purge, using=self.using)
                self._after_commit(
                    'uninstall', module_key, actor,
                    f"Uninstalled module {module_key}",
                    details={
                        'delete_data': options.delete_data,
                        'backup_files': options.backup_files,
                        'delete_files': options.delete_files,
                        'backup_path': str(backup_path) if backup_path else None,
                        'table': table_name,
                    },
                    signal=signals.module_uninstalled,
                    options=options, backup_path=backup_path,
                )
                if options.delete_files and module_dir is not None:
                    transaction.on_commit(lambda: self._delete_files(module_key, module_dir), using=self.using)

        return TransitionResult(module_key, 'uninstall', None, backup_path=backup_path)

    # Helpers

    def _locked_row(self, module_key: str) -> InstalledModule:
        row = self.registry.get_for_update(module_key)
        if row is None:
            raise ModuleNotFoundError(f"Module {module_key} is not registered")
        return row

    def _already_installed(self, row: InstalledModule) -> TransitionResult:
        if row.status == InstalledModule.STATUS_INACTIVE:
            raise ModuleStateError(f"Module {row.module_key} is installed but inactive; activate it instead")
        logger.debug(f"Module {row.module_key} is already installed and active")
        return TransitionResult(row.module_key, 'install', LifecycleState.ACTIVE, changed=False)

    def _verify_table_contract(self, descriptor: ModuleDescriptor) -> None:
        names = {column.name for column in self.storage.get_columns(descriptor.table_name)}
        missing = [name for name in COMMON_COLUMNS if name not in names]
        if missing:
            raise ModuleInstallationError(
                f"Table {descriptor.table_name} of module {descriptor.key} "
                f"lacks required columns: {', '.join(missing)}"
            )

    def _module_directory(self, module_key: str) -> Optional[Path]:
        for root in self.config.module_paths:
            candidate = Path(root) / module_key
            if candidate.is_dir():
                return candidate
        return None

    def _backup(self, module_key: str, module_dir: Optional[Path]) -> Path:
        if self.config.backup_path is None:
            raise BackupError(f"Cannot back up {module_key}: no backup path configured")
        if module_dir is None:
            raise BackupError(f"Cannot back up {module_key}: module files not found")

        target = Path(self.config.backup_path) / f"{module_key}_{timezone.now():%Y-%m-%d_%H-%M-%S_%f}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(module_dir, target)
        except OSError as e:
            raise BackupError(f"Backup of module {module_key} to {target} failed: {e}") from e

        logger.info(f"Backed up module {module_key} to {target}")
        return target

    def _delete_files(self, module_key: str, module_dir: Path) -> None:
        try:
            shutil.rmtree(module_dir)
        except OSError as e:
            logger.warning(f"Could not delete files of module {module_key} at {module_dir}: {e}")
        else:
            logger.info(f"Deleted files of module {module_key} at {module_dir}")

    def _registered(self, descriptor: ModuleDescriptor, actor: Optional[Actor]) -> None:
        self._after_commit(
            'register', descriptor.key, actor,
            f"Registered module {descriptor}",
            details={'version': descriptor.version, 'category': descriptor.category},
            signal=signals.module_registered,
            descriptor=descriptor,
        )

    def _after_commit(self, action: str, module_key: str, actor: Optional[Actor],
                      description: str, details: Optional[dict] = None, signal=None, **signal_kwargs) -> None:
        """Log, audit and signal a transition once the transaction commits"""

        def committed():
            logger.info(description)
            self.audit.record_safely(
                action, module_key, actor=actor, description=description, details=details,
            )
            if signal is not None:
                responses = signal.send_robust(
                    sender=self.__class__, module_key=module_key, actor=actor, **signal_kwargs
                )
                for receiver, response in responses:
                    if isinstance(response, Exception):
                        logger.warning(f"Receiver {receiver} failed for {action} of {module_key}: {response}")

        transaction.on_commit(committed, using=self.using)

    @contextmanager
    def _failures(self, action: str, module_key: str, actor: Optional[Actor]):
        """Record a failed transition as ``<action>_error`` outside its transaction"""
        try:
            yield
        except (ModuleError, DatabaseError) as e:
            if isinstance(e, InconsistentState):
                logger.error(f"Inconsistent state during {action} of {module_key}: {e}")
            self.factory.invalidate(module_key)
            self.audit.record_safely(
                f"{action}_error", module_key, actor=actor,
                description=f"Failed to {action} module {module_key}: {e}",
                details={'error': e.__class__.__name__, 'message': str(e)},
            )
            raise

    @staticmethod
    def _version_satisfied(available: str, required: str) -> bool:
        try:
            return Version(available) >= Version(required)
        except InvalidVersion:
            return False
