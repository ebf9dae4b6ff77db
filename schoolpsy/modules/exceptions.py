"""
Module System Exceptions

Custom exceptions for the test module system and the result store.
"""


class ModuleError(Exception):
    """Base exception for module system errors"""
    pass


class ManifestError(ModuleError):
    """Raised when a module manifest cannot be turned into a descriptor"""

    def __init__(self, message, path=None, field=None):
        self.path = str(path) if path is not None else None
        self.field = field
        if self.path:
            message = f"{message} ({self.path})"
        super().__init__(message)


class ManifestSyntaxError(ManifestError):
    """Raised when the manifest file is not valid JSON/YAML (corrupt file)"""
    pass


class ManifestFieldError(ManifestError):
    """Raised when a required manifest field is missing or malformed"""
    pass


class KeyMismatchError(ModuleError):
    """Raised when the manifest key differs from its directory name"""

    def __init__(self, manifest_key, directory, path=None):
        self.manifest_key = manifest_key
        self.directory = directory
        self.path = str(path) if path is not None else None
        super().__init__(
            f"Module key '{manifest_key}' does not match directory '{directory}'"
            + (f" ({self.path})" if self.path else "")
        )


class ModuleNotFoundError(ModuleError):
    """Raised when a module cannot be found"""
    pass


class ResultTableMissingError(ModuleNotFoundError):
    """Raised when the result table of a module does not exist"""
    pass


class ModuleLoadError(ModuleError):
    """Raised when a module fails to load"""
    pass


class ModuleStateError(ModuleError):
    """Raised when module is in an invalid state for the requested operation"""
    pass


class DependencyUnmetError(ModuleError):
    """Raised when module dependency requirements are not met"""

    def __init__(self, module_key, unmet):
        self.module_key = module_key
        self.unmet = list(unmet)
        super().__init__(
            f"Module {module_key} has unmet dependencies: {'; '.join(self.unmet)}"
        )


class ModuleInstallationError(ModuleError):
    """Raised when module installation fails"""
    pass


class BackupError(ModuleError):
    """Raised when the module files cannot be backed up before uninstall"""
    pass


class InconsistentState(ModuleError):
    """Raised when the registry and the result tables disagree"""

    def __init__(self, module_key, table_name, message):
        self.module_key = module_key
        self.table_name = table_name
        super().__init__(f"{module_key}: {message}")


class StorageUnavailable(ModuleError):
    """
    Raised when the storage engine cannot be reached.

    Transient: callers may retry with backoff. The engine itself never retries.
    """
    retryable = True


class ResultStoreError(ModuleError):
    """Base exception for result store errors"""
    pass


class AccessDenied(ResultStoreError):
    """Raised when a psychologist touches data of another tenant"""
    pass


class DuplicateRecord(ResultStoreError):
    """Raised when a child already has a result for the same test date"""
    pass


class UnknownField(ResultStoreError):
    """Raised when a field does not exist in the live result table"""

    def __init__(self, module_key, field, message=None):
        self.module_key = module_key
        self.field = field
        super().__init__(message or f"Unknown field '{field}' for module {module_key}")


class RecordNotFound(ResultStoreError):
    """Raised when a result record does not exist"""
    pass


class ResultValidationError(ResultStoreError):
    """Raised when result data is invalid"""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(', '.join(self.errors))
