"""
Module Catalog

Scans the configured module roots for module directories, parses their
manifests and reconciles what is on disk with the module registry.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from django.core.cache import cache
from django.db import transaction

from schoolpsy.audit.services import AuditLog
from schoolpsy.core.context import Actor

from . import signals
from .conf import ModuleSystemConfig
from .exceptions import KeyMismatchError, ManifestError, ModuleError, ModuleNotFoundError
from .manifest import LifecycleState, ManifestParser, ModuleDescriptor, find_manifest
from .registry import ModuleRegistry

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Outcome of one catalog scan"""
    descriptors: List[ModuleDescriptor] = field(default_factory=list)
    failures: List[ModuleError] = field(default_factory=list)

    @property
    def keys(self) -> List[str]:
        return [d.key for d in self.descriptors]

    def get(self, module_key: str) -> Optional[ModuleDescriptor]:
        for descriptor in self.descriptors:
            if descriptor.key == module_key:
                return descriptor
        return None


class ModuleCatalog:
    """
    Discovers module directories on disk.

    A directory without a manifest is skipped. A broken manifest or a key
    that differs from the directory name is reported in ``failures`` and the
    scan goes on with the remaining directories.
    """

    def __init__(self, config: ModuleSystemConfig, registry: ModuleRegistry,
                 audit: Optional[AuditLog] = None, parser: Optional[ManifestParser] = None):
        self.config = config
        self.registry = registry
        self.audit = audit or AuditLog(using=registry.using)
        self.parser = parser or ManifestParser(config.categories, config.table_template)

    @property
    def cache_key(self) -> str:
        roots = '|'.join(str(p) for p in self.config.module_paths)
        return f"schoolpsy:modules:catalog:{hashlib.md5(roots.encode('utf-8')).hexdigest()}"

    # Discovery

    def scan(self) -> ScanResult:
        """
        Scan every module root.

        Returns:
            ScanResult with the valid descriptors (state DISCOVERED) and the
            failures met along the way
        """
        result = ScanResult()
        seen: Dict[str, Path] = {}

        for directory in self._candidate_directories():
            try:
                descriptor = self._load(directory)
            except (ManifestError, KeyMismatchError) as e:
                logger.warning(f"Skipping module directory {directory}: {e}")
                result.failures.append(e)
                continue

            if descriptor is None:
                continue

            if descriptor.key in seen:
                logger.warning(
                    f"Duplicate module key {descriptor.key} in {directory}, "
                    f"keeping {seen[descriptor.key]}"
                )
                continue

            seen[descriptor.key] = directory
            result.descriptors.append(descriptor)

        logger.debug(
            f"Catalog scan found {len(result.descriptors)} modules, {len(result.failures)} failures"
        )
        return result

    def list(self) -> List[ModuleDescriptor]:
        """
        Modules on disk annotated with their registry state.

        The directory scan is cached when discovery caching is enabled; the
        registry state is always read fresh.
        """
        descriptors = None
        if self.config.cache_discovery:
            descriptors = cache.get(self.cache_key)

        if descriptors is None:
            descriptors = self.scan().descriptors
            if self.config.cache_discovery:
                cache.set(self.cache_key, descriptors, self.config.cache_ttl)

        states = {row.module_key: row.state for row in self.registry.all()}
        return [
            d.with_state(states.get(d.key, LifecycleState.DISCOVERED))
            for d in descriptors
        ]

    def get(self, module_key: str) -> ModuleDescriptor:
        """
        Load one module by key, annotated with its registry state.

        Raises:
            ModuleNotFoundError: If no module root holds the module
            ManifestError: If its manifest is broken
            KeyMismatchError: If its manifest names another key
        """
        if module_key not in self.config.blacklist:
            for root in self.config.module_paths:
                directory = Path(root) / module_key
                if not directory.is_dir():
                    continue
                descriptor = self._load(directory)
                if descriptor is not None:
                    state = self.registry.state(module_key) or LifecycleState.DISCOVERED
                    return descriptor.with_state(state)

        raise ModuleNotFoundError(f"Module not found: {module_key}")

    def invalidate_cache(self) -> None:
        cache.delete(self.cache_key)

    # Reconciliation

    def scan_and_register(self, actor: Optional[Actor] = None) -> List[str]:
        """
        Upsert a registry row for every module on disk.

        New modules enter the registry as REGISTERED; existing rows keep their
        status and only get their metadata refreshed. Only the registry rows
        being upserted are locked.

        Returns:
            Keys whose registry row was created or changed; empty when nothing
            changed since the previous run
        """
        result = self.scan()
        changed = []

        for descriptor in result.descriptors:
            row, created, updated = self.registry.upsert(descriptor)
            if not updated:
                continue

            changed.append(descriptor.key)
            if created:
                registered = descriptor.with_state(row.state)
                transaction.on_commit(
                    lambda d=registered: self._registered(d, actor),
                    using=self.registry.using,
                )

        if changed:
            self.invalidate_cache()
            logger.info(f"Registry reconciled, changed modules: {', '.join(changed)}")

        return changed

    def _registered(self, descriptor: ModuleDescriptor, actor: Optional[Actor]) -> None:
        self.audit.record_safely(
            'register',
            descriptor.key,
            actor=actor,
            description=f"Registered module {descriptor}",
            details={'version': descriptor.version, 'category': descriptor.category},
        )
        responses = signals.module_registered.send_robust(
            sender=self.__class__, module_key=descriptor.key, descriptor=descriptor, actor=actor
        )
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.warning(f"Receiver {receiver} failed for register of {descriptor.key}: {response}")

    # Helpers

    def _candidate_directories(self) -> Iterator[Path]:
        for root in self.config.module_paths:
            root = Path(root)
            if not root.is_dir():
                logger.warning(f"Module root does not exist: {root}")
                continue

            for item in sorted(root.iterdir()):
                if not item.is_dir() or item.name.startswith('.'):
                    continue
                if item.name in self.config.blacklist:
                    logger.debug(f"Skipping blacklisted module directory {item}")
                    continue
                yield item

    def _load(self, directory: Path) -> Optional[ModuleDescriptor]:
        manifest_path = find_manifest(directory)
        if manifest_path is None:
            logger.debug(f"No manifest in {directory}, skipping")
            return None

        descriptor = self.parser.parse_file(manifest_path)
        if descriptor.key != directory.name:
            raise KeyMismatchError(descriptor.key, directory.name, path=manifest_path)
        return descriptor
