"""
Module Engine

Explicitly constructed composition of the module services for one database
alias. Nothing here is a process-wide singleton; build one engine per
process or per test.
"""

from typing import Any, Callable, Dict, List, Optional

from schoolpsy.audit.models import AuditEntry
from schoolpsy.audit.services import AuditLog

from .catalog import ModuleCatalog
from .conf import ModuleSystemConfig
from .factory import Constructor, ModuleInstanceFactory
from .lifecycle import LifecycleManager
from .registry import ModuleRegistry
from .storage import ResultTableStorage
from .store import ResultStore


class ModuleEngine:
    """
    Catalog, registry, lifecycle manager, instance factory, result store and
    audit log wired together.

    Example:
        engine = ModuleEngine.from_settings()
        engine.catalog.scan_and_register()
        engine.lifecycle.install('anxiety_test', actor)
        engine.store.create('anxiety_test', actor, {'child_id': 42, 'test_date': '2024-03-01'})
    """

    def __init__(
        self,
        config: ModuleSystemConfig,
        using: str = 'default',
        constructors: Optional[Dict[str, Constructor]] = None,
        ownership_check: Optional[Callable[[int, int], bool]] = None,
    ):
        self.config = config
        self.using = using

        self.audit = AuditLog(using=using)
        self.registry = ModuleRegistry(using=using)
        self.storage = ResultTableStorage(using=using)
        self.factory = ModuleInstanceFactory(constructors)
        self.catalog = ModuleCatalog(config, self.registry, self.audit)
        self.lifecycle = LifecycleManager(
            config, self.catalog, self.registry, self.storage, self.factory, self.audit,
        )
        self.store = ResultStore(
            config, self.catalog, self.registry, self.storage, self.factory, self.audit,
            ownership_check=ownership_check,
        )

    @classmethod
    def from_settings(cls, using: str = 'default', overrides: Optional[Dict[str, Any]] = None,
                      **kwargs) -> 'ModuleEngine':
        """Build an engine from ``settings.SCHOOLPSY_MODULES``"""
        return cls(ModuleSystemConfig.from_settings(overrides), using=using, **kwargs)

    def history(self, target_key: str, limit: int = 20) -> List[AuditEntry]:
        """Latest audit entries of a module"""
        return self.audit.history(target_key, limit=limit)

    def shutdown(self) -> None:
        """Release every cached module instance"""
        self.factory.clear()
