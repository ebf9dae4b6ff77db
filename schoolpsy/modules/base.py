"""
Base classes and capability protocols for test module behaviour.

A module directory may ship Python behaviour through its manifest
``entry_point``. The engine works with any object and discovers optional
capabilities by protocol, so a module that only stores data needs no code.
"""

from typing import Any, Dict, Protocol, runtime_checkable

from .manifest import ModuleDescriptor


@runtime_checkable
class Computer(Protocol):
    """Derives stored fields (scores, levels) from the submitted fields."""

    def compute(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...


@runtime_checkable
class Interpreter(Protocol):
    """Produces read-only annotations for a stored result."""

    def interpret(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...


class BaseTestModule:
    """
    Default behaviour of a test module.

    Has no capabilities of its own; subclasses add ``compute`` and/or
    ``interpret`` to opt in.
    """

    def __init__(self, descriptor: ModuleDescriptor):
        self.descriptor = descriptor
        self._initialized = False

    @property
    def module_key(self) -> str:
        return self.descriptor.key

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """
        Called once when the factory builds the instance.

        Override to load norms, scoring tables or other resources.
        """
        self._initialized = True

    def shutdown(self) -> None:
        """Called when the instance is evicted from the factory cache."""
        self._initialized = False

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.module_key}>"
