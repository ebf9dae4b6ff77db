"""
Module Manifest

Reads a module's self-description (module.json / module.yaml) and turns it
into a validated ModuleDescriptor.
"""

import json
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import jsonschema
import yaml

from .exceptions import ManifestFieldError, ManifestSyntaxError


MANIFEST_FILENAMES = ('module.json', 'module.yaml', 'module.yml')

MODULE_KEY_PATTERN = r'^[a-z][a-z0-9_]*$'
VERSION_PATTERN = r'^\d+\.\d+\.\d+$'
TABLE_NAME_PATTERN = r'^[a-z][a-z0-9_]*$'

# Column types a manifest may declare for engine-generated result tables
COLUMN_TYPES = (
    'integer', 'bigint', 'float', 'decimal', 'text', 'string',
    'date', 'datetime', 'boolean',
)


class LifecycleState(str, Enum):
    """Lifecycle state of a module. Uninstalled modules have no registry row."""
    DISCOVERED = 'discovered'
    REGISTERED = 'registered'
    ACTIVE = 'active'
    INACTIVE = 'inactive'


@dataclass(frozen=True)
class Dependencies:
    """Minimum versions and capabilities a module requires from the host"""
    core: Optional[str] = None
    runtime: Optional[str] = None
    capabilities: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StorageContract:
    """The result table a module owns and how it is provisioned"""
    table_name: str
    create_script: Optional[str] = None
    columns: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ModuleDescriptor:
    """Identity and metadata of one pluggable test module"""
    key: str
    name: str
    version: str
    category: str
    storage: StorageContract
    description: str = ''
    author: str = ''
    dependencies: Dependencies = field(default_factory=Dependencies)
    entry_point: Optional[str] = None
    path: Optional[Path] = None
    state: LifecycleState = LifecycleState.DISCOVERED

    @property
    def table_name(self) -> str:
        return self.storage.table_name

    @property
    def is_registered(self) -> bool:
        return self.state != LifecycleState.DISCOVERED

    @property
    def is_installed(self) -> bool:
        return self.state in (LifecycleState.ACTIVE, LifecycleState.INACTIVE)

    @property
    def is_active(self) -> bool:
        return self.state == LifecycleState.ACTIVE

    def with_state(self, state: LifecycleState) -> 'ModuleDescriptor':
        return replace(self, state=state)

    def __str__(self) -> str:
        return f"{self.name} ({self.key}@{self.version})"


def build_manifest_schema(categories: Iterable[str]) -> Dict[str, Any]:
    """JSON Schema every manifest must satisfy"""
    return {
        'type': 'object',
        'required': ['module_key', 'name', 'version', 'category'],
        'properties': {
            'module_key': {'type': 'string', 'pattern': MODULE_KEY_PATTERN},
            'name': {'type': 'string', 'minLength': 1},
            'description': {'type': 'string'},
            'version': {'type': 'string', 'pattern': VERSION_PATTERN},
            'author': {'type': 'string'},
            'category': {'type': 'string', 'enum': sorted(categories)},
            'entry_point': {'type': 'string', 'minLength': 1},
            'dependencies': {
                'type': 'object',
                'properties': {
                    'core': {'type': 'string', 'pattern': VERSION_PATTERN},
                    'runtime': {'type': 'string', 'pattern': r'^\d+(\.\d+){0,2}$'},
                    'capabilities': {
                        'type': 'array',
                        'items': {'type': 'string'},
                    },
                },
            },
            'database': {
                'type': 'object',
                'properties': {
                    'table': {'type': 'string', 'pattern': TABLE_NAME_PATTERN},
                    'create_script': {'type': 'string', 'minLength': 1},
                    'columns': {
                        'type': 'object',
                        'propertyNames': {'pattern': TABLE_NAME_PATTERN},
                        'additionalProperties': {'enum': list(COLUMN_TYPES)},
                    },
                },
            },
        },
    }


class ManifestParser:
    """
    Parses and validates module manifests.

    Corrupt documents raise ManifestSyntaxError, documents missing a required
    field or carrying a malformed one raise ManifestFieldError. Both carry the
    manifest path.
    """

    def __init__(self, categories: Iterable[str], table_template: str = 'test_{key}_results'):
        self.categories = frozenset(categories)
        self.table_template = table_template
        self.schema = build_manifest_schema(self.categories)
        self._validator = jsonschema.Draft7Validator(self.schema)

    def parse_file(self, path: Path) -> ModuleDescriptor:
        """
        Parse a manifest file.

        Args:
            path: Path of module.json / module.yaml

        Returns:
            Validated ModuleDescriptor whose ``path`` is the module directory

        Raises:
            ManifestSyntaxError: If the file cannot be read or is not well formed
            ManifestFieldError: If a required field is missing or malformed
        """
        path = Path(path)
        fmt = 'json' if path.suffix == '.json' else 'yaml'
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ManifestSyntaxError(f"Manifest cannot be read: {e}", path=path) from e
        descriptor = self.parse(raw, path=path, fmt=fmt)
        return replace(descriptor, path=path.parent)

    def parse(self, raw: bytes, path: Optional[Path] = None, fmt: str = 'json') -> ModuleDescriptor:
        """
        Parse raw manifest bytes.

        Args:
            raw: File contents
            path: Manifest path used in error messages
            fmt: 'json' or 'yaml'

        Returns:
            Validated ModuleDescriptor

        Raises:
            ManifestSyntaxError: If the document is not well formed
            ManifestFieldError: If a required field is missing or malformed
        """
        data = self._load(raw, path, fmt)

        if not isinstance(data, dict):
            raise ManifestSyntaxError("Manifest must be a mapping at the top level", path=path)

        self._validate(data, path)
        return self._build(data)

    def _load(self, raw: bytes, path: Optional[Path], fmt: str) -> Any:
        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ManifestSyntaxError(f"Manifest is not valid UTF-8: {e}", path=path) from e

        if fmt == 'json':
            try:
                return json.loads(text)
            except json.JSONDecodeError as e:
                raise ManifestSyntaxError(f"Malformed JSON: {e}", path=path) from e
        elif fmt == 'yaml':
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise ManifestSyntaxError(f"Malformed YAML: {e}", path=path) from e
        else:
            raise ValueError(f"Unsupported manifest format: {fmt}")

    def _validate(self, data: Dict[str, Any], path: Optional[Path]) -> None:
        errors = sorted(self._validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
        if not errors:
            return

        error = errors[0]
        if error.validator == 'required':
            missing = re.search(r"'([^']+)' is a required property", error.message)
            field_name = missing.group(1) if missing else None
            message = f"Missing required field: {field_name}"
        else:
            field_name = '.'.join(str(p) for p in error.absolute_path) or None
            message = f"Invalid field {field_name}: {error.message}"

        raise ManifestFieldError(message, path=path, field=field_name)

    def _build(self, data: Dict[str, Any]) -> ModuleDescriptor:
        key = data['module_key']
        deps = data.get('dependencies') or {}
        database = data.get('database') or {}

        return ModuleDescriptor(
            key=key,
            name=data['name'],
            version=data['version'],
            category=data['category'],
            description=data.get('description', ''),
            author=data.get('author', ''),
            dependencies=Dependencies(
                core=deps.get('core'),
                runtime=deps.get('runtime'),
                capabilities=tuple(deps.get('capabilities', [])),
            ),
            storage=StorageContract(
                table_name=database.get('table') or self.table_template.format(key=key),
                create_script=database.get('create_script'),
                columns=tuple((database.get('columns') or {}).items()),
            ),
            entry_point=data.get('entry_point'),
        )


def find_manifest(directory: Path) -> Optional[Path]:
    """Return the manifest file of a module directory, if any"""
    for filename in MANIFEST_FILENAMES:
        candidate = Path(directory) / filename
        if candidate.is_file():
            return candidate
    return None
