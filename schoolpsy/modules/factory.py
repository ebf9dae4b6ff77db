"""
Module Instance Factory

Builds the behaviour object of a module from an explicit constructor map or
from the manifest ``entry_point``, and caches one instance per module key.
"""

import importlib.util
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from django.utils.module_loading import import_string

from .base import BaseTestModule
from .exceptions import ModuleLoadError
from .manifest import ModuleDescriptor

logger = logging.getLogger(__name__)


Constructor = Callable[[ModuleDescriptor], Any]


class ModuleInstanceFactory:
    """
    Creates and caches module instances.

    Resolution order for a key: a registered constructor, the manifest
    ``entry_point``, otherwise a capability-less BaseTestModule.
    """

    def __init__(self, constructors: Optional[Dict[str, Constructor]] = None):
        self._constructors: Dict[str, Constructor] = dict(constructors or {})
        self._instances: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def register(self, module_key: str, constructor: Constructor) -> None:
        """Register an explicit constructor, replacing any cached instance"""
        with self._lock:
            self._constructors[module_key] = constructor
            self.invalidate(module_key)

    def unregister(self, module_key: str) -> None:
        with self._lock:
            self._constructors.pop(module_key, None)
            self.invalidate(module_key)

    def create(self, descriptor: ModuleDescriptor) -> Any:
        """
        Get the instance of a module, building it on first use.

        Args:
            descriptor: Module descriptor

        Returns:
            Module instance

        Raises:
            ModuleLoadError: If the behaviour cannot be imported or built
        """
        with self._lock:
            instance = self._instances.get(descriptor.key)
            if instance is not None:
                return instance

            instance = self._build(descriptor)

            initialize = getattr(instance, 'initialize', None)
            if callable(initialize):
                try:
                    initialize()
                except Exception as e:
                    raise ModuleLoadError(f"Module {descriptor.key} failed to initialize: {e}") from e

            self._instances[descriptor.key] = instance
            logger.debug(f"Created instance of module {descriptor.key}: {instance!r}")
            return instance

    def cached(self, module_key: str) -> Optional[Any]:
        return self._instances.get(module_key)

    def invalidate(self, module_key: str) -> None:
        """Drop the cached instance of a module, calling its shutdown hook"""
        with self._lock:
            instance = self._instances.pop(module_key, None)

        if instance is None:
            return

        shutdown = getattr(instance, 'shutdown', None)
        if callable(shutdown):
            try:
                shutdown()
            except Exception as e:
                logger.warning(f"Shutdown of module {module_key} failed: {e}")

    def clear(self) -> None:
        for module_key in list(self._instances):
            self.invalidate(module_key)

    def _build(self, descriptor: ModuleDescriptor) -> Any:
        constructor = self._constructors.get(descriptor.key)
        if constructor is None and descriptor.entry_point:
            constructor = self._resolve_entry_point(descriptor)
        if constructor is None:
            constructor = BaseTestModule

        try:
            return constructor(descriptor)
        except Exception as e:
            raise ModuleLoadError(f"Failed to build module {descriptor.key}: {e}") from e

    def _resolve_entry_point(self, descriptor: ModuleDescriptor) -> Constructor:
        entry_point = descriptor.entry_point

        if ':' not in entry_point:
            try:
                return import_string(entry_point)
            except ImportError as e:
                raise ModuleLoadError(
                    f"Cannot import entry point {entry_point} of module {descriptor.key}: {e}"
                ) from e

        file_name, class_name = entry_point.split(':', 1)
        if descriptor.path is None:
            raise ModuleLoadError(f"Module {descriptor.key} has no directory to load {file_name} from")

        base = Path(descriptor.path).resolve()
        module_file = (base / file_name).resolve()
        if base not in module_file.parents or not module_file.is_file():
            raise ModuleLoadError(f"Entry point file not found for module {descriptor.key}: {file_name}")

        import_name = f"schoolpsy_test_modules.{descriptor.key}.{module_file.stem}"
        spec = importlib.util.spec_from_file_location(import_name, module_file)
        if not spec or not spec.loader:
            raise ModuleLoadError(f"Failed to create import spec for {module_file}")

        module_code = importlib.util.module_from_spec(spec)
        sys.modules[spec.name] = module_code
        try:
            spec.loader.exec_module(module_code)
        except Exception as e:
            sys.modules.pop(spec.name, None)
            raise ModuleLoadError(f"Failed to execute {module_file}: {e}") from e

        try:
            return getattr(module_code, class_name)
        except AttributeError as e:
            raise ModuleLoadError(f"{module_file} defines no {class_name}") from e
