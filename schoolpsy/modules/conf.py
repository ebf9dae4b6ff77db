"""
Module System Configuration

Turns the SCHOOLPSY_MODULES settings dictionary into an immutable config
object that is passed explicitly to the module services.
"""

import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

from django.conf import settings


DEFAULT_CATEGORIES = {
    'emotional': {'name': 'Emotional sphere'},
    'cognitive': {'name': 'Cognitive sphere'},
    'personality': {'name': 'Personality traits'},
    'interpersonal': {'name': 'Interpersonal relations'},
    'career': {'name': 'Career guidance'},
    'general': {'name': 'General tests'},
}

DEFAULT_CHILD_OWNERSHIP_CHECK = 'schoolpsy.children.services.child_belongs_to_psychologist'


@dataclass(frozen=True)
class ModuleSystemConfig:
    """Configuration of the test module system"""

    module_paths: Tuple[Path, ...] = ()
    categories: Dict[str, Dict[str, Any]] = field(default_factory=lambda: dict(DEFAULT_CATEGORIES))
    core_version: str = '1.0.0'
    runtime_version: str = field(default_factory=platform.python_version)
    capabilities: FrozenSet[str] = frozenset()
    backup_path: Optional[Path] = None
    blacklist: FrozenSet[str] = frozenset()
    cache_discovery: bool = False
    cache_ttl: int = 3600
    table_template: str = 'test_{key}_results'
    max_test_age_years: int = 10
    child_ownership_check: str = DEFAULT_CHILD_OWNERSHIP_CHECK

    @classmethod
    def from_settings(cls, overrides: Optional[Dict[str, Any]] = None) -> 'ModuleSystemConfig':
        """
        Build the config from ``settings.SCHOOLPSY_MODULES``.

        Args:
            overrides: Keys (in settings spelling) replacing the settings values

        Returns:
            ModuleSystemConfig instance
        """
        data = dict(getattr(settings, 'SCHOOLPSY_MODULES', {}))
        data.update(overrides or {})

        backup_path = data.get('BACKUP_PATH')

        return cls(
            module_paths=tuple(Path(p) for p in data.get('PATHS', []) if p),
            categories=dict(data.get('CATEGORIES') or DEFAULT_CATEGORIES),
            core_version=data.get('CORE_VERSION', '1.0.0'),
            runtime_version=data.get('RUNTIME_VERSION') or platform.python_version(),
            capabilities=frozenset(data.get('CAPABILITIES', [])),
            backup_path=Path(backup_path) if backup_path else None,
            blacklist=frozenset(k for k in data.get('BLACKLIST', []) if k),
            cache_discovery=data.get('CACHE_DISCOVERY', False),
            cache_ttl=data.get('CACHE_TTL', 3600),
            table_template=data.get('TABLE_TEMPLATE', 'test_{key}_results'),
            max_test_age_years=data.get('MAX_TEST_AGE_YEARS', 10),
            child_ownership_check=data.get('CHILD_OWNERSHIP_CHECK', DEFAULT_CHILD_OWNERSHIP_CHECK),
        )

    def default_table_name(self, module_key: str) -> str:
        return self.table_template.format(key=module_key)
