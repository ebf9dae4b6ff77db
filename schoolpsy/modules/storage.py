"""
Result Table Storage

Thin layer over a Django database connection for the dynamically named
result tables of test modules: provisioning, dropping, live column
introspection and parameterised statements.
"""

import datetime
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import sqlparse
from django.conf import settings
from django.db import DatabaseError, InterfaceError, OperationalError, connections, models, transaction
from django.utils import timezone

from .exceptions import ModuleInstallationError, StorageUnavailable

logger = logging.getLogger(__name__)


# Columns every result table must contain
COMMON_COLUMNS = ('id', 'child_id', 'psychologist_id', 'test_date', 'created_at')

NUMERIC_TYPES = frozenset({
    'AutoField', 'BigAutoField', 'SmallAutoField',
    'IntegerField', 'BigIntegerField', 'SmallIntegerField',
    'PositiveIntegerField', 'PositiveBigIntegerField', 'PositiveSmallIntegerField',
    'FloatField', 'DecimalField',
})

# Manifest column types -> Django fields used to render portable DDL
COLUMN_FIELDS = {
    'integer': lambda: models.IntegerField(),
    'bigint': lambda: models.BigIntegerField(),
    'float': lambda: models.FloatField(),
    'decimal': lambda: models.DecimalField(max_digits=12, decimal_places=4),
    'text': lambda: models.TextField(),
    'string': lambda: models.CharField(max_length=255),
    'date': lambda: models.DateField(),
    'datetime': lambda: models.DateTimeField(),
    'boolean': lambda: models.BooleanField(),
}


@contextmanager
def storage_guard(operation: str):
    """
    Convert lost-connection style driver errors into StorageUnavailable.

    The error goes to the operational log and is raised to the caller;
    nothing is retried here.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Storage unavailable while {operation}: {e}")
        raise StorageUnavailable(f"Storage unavailable while {operation}: {e}") from e


@dataclass(frozen=True)
class ColumnInfo:
    """One column of a live result table"""
    name: str
    internal_type: str
    null_ok: bool = True
    is_primary_key: bool = False

    @property
    def is_common(self) -> bool:
        return self.name in COMMON_COLUMNS

    @property
    def is_numeric(self) -> bool:
        return self.internal_type in NUMERIC_TYPES


class ResultTableStorage:
    """
    Storage access for module result tables on one database alias.

    Table and column names are always quoted through the backend and only
    ever come from manifests (pattern-checked) or from live introspection.
    """

    def __init__(self, using: str = 'default'):
        self.using = using

    @property
    def connection(self):
        return connections[self.using]

    def quote(self, name: str) -> str:
        return self.connection.ops.quote_name(name)

    # Introspection

    def table_exists(self, table_name: str) -> bool:
        with storage_guard(f"checking table {table_name}"):
            with self.connection.cursor() as cursor:
                return table_name in self.connection.introspection.table_names(cursor)

    def get_columns(self, table_name: str) -> List[ColumnInfo]:
        """
        Live column set of a table, in table order.

        Args:
            table_name: Result table to describe

        Returns:
            List of ColumnInfo
        """
        introspection = self.connection.introspection

        with storage_guard(f"describing table {table_name}"):
            with self.connection.cursor() as cursor:
                description = introspection.get_table_description(cursor, table_name)
                primary_key = introspection.get_primary_key_column(cursor, table_name)

        return [
            ColumnInfo(
                name=row.name,
                internal_type=self._field_type(row),
                null_ok=bool(row.null_ok),
                is_primary_key=row.name == primary_key,
            )
            for row in description
        ]

    def _field_type(self, row) -> str:
        introspection = self.connection.introspection
        try:
            return introspection.get_field_type(row.type_code, row)
        except KeyError:
            pass

        # Parameterised declarations such as decimal(5,2) on SQLite
        if isinstance(row.type_code, str):
            base_type = row.type_code.split('(')[0].strip().lower()
            try:
                return introspection.data_types_reverse[base_type]
            except KeyError:
                pass

        return 'TextField'

    # Provisioning

    def create_table(self, table_name: str, create_script: Optional[str] = None,
                     columns: Sequence[Tuple[str, str]] = (), module_path: Optional[Path] = None) -> bool:
        """
        Create a result table unless it already exists.

        Runs the module's provisioning script or, without one, DDL generated
        from the common columns plus the declared module columns. A failure
        after which the table exists (another process created it first) is
        treated as "already exists".

        Returns:
            True if this call created the table
        """
        if self.table_exists(table_name):
            logger.debug(f"Result table {table_name} already exists")
            return False

        if create_script:
            statements = self._script_statements(create_script, module_path)
        else:
            statements = [self._default_ddl(table_name, columns)]

        try:
            with transaction.atomic(using=self.using):
                with self.connection.cursor() as cursor:
                    for statement in statements:
                        cursor.execute(statement)
        except DatabaseError as e:
            if self.table_exists(table_name):
                logger.info(f"Result table {table_name} was created concurrently")
                return False
            raise ModuleInstallationError(f"Failed to create table {table_name}: {e}") from e

        if not self.table_exists(table_name):
            raise ModuleInstallationError(
                f"Provisioning script did not create table {table_name}"
            )

        logger.info(f"Created result table {table_name}")
        return True

    def drop_table(self, table_name: str) -> None:
        with storage_guard(f"dropping table {table_name}"):
            with self.connection.cursor() as cursor:
                cursor.execute(f"DROP TABLE IF EXISTS {self.quote(table_name)}")
        logger.info(f"Dropped result table {table_name}")

    def _script_statements(self, create_script: str, module_path: Optional[Path]) -> List[str]:
        if module_path is None:
            raise ModuleInstallationError(f"Cannot locate provisioning script {create_script}")

        base = Path(module_path).resolve()
        script = (base / create_script).resolve()
        if base not in script.parents:
            raise ModuleInstallationError(
                f"Provisioning script {create_script} lies outside the module directory"
            )
        if not script.is_file():
            raise ModuleInstallationError(f"Provisioning script not found: {script}")

        statements = []
        for statement in sqlparse.split(script.read_text(encoding='utf-8')):
            statement = sqlparse.format(statement, strip_comments=True).strip()
            if statement:
                statements.append(statement)
        return statements

    def _default_ddl(self, table_name: str, columns: Sequence[Tuple[str, str]]) -> str:
        connection = self.connection
        qn = self.quote
        pk_suffix = getattr(connection, 'data_types_suffix', {}).get('AutoField', '')

        definitions = [
            f"{qn('id')} {models.AutoField(primary_key=True).db_type(connection)} "
            f"NOT NULL PRIMARY KEY {pk_suffix}".strip(),
            f"{qn('child_id')} {models.IntegerField().db_type(connection)} NOT NULL",
            f"{qn('psychologist_id')} {models.IntegerField().db_type(connection)} NOT NULL",
            f"{qn('test_date')} {models.DateField().db_type(connection)} NOT NULL",
            f"{qn('created_at')} {models.DateTimeField().db_type(connection)} "
            f"NOT NULL DEFAULT CURRENT_TIMESTAMP",
        ]

        for name, column_type in columns:
            if name in COMMON_COLUMNS:
                continue
            field = COLUMN_FIELDS[column_type]()
            definitions.append(f"{qn(name)} {field.db_type(connection)} NULL")

        definitions.append(
            f"UNIQUE ({qn('child_id')}, {qn('psychologist_id')}, {qn('test_date')})"
        )

        return f"CREATE TABLE IF NOT EXISTS {qn(table_name)} ({', '.join(definitions)})"

    # Statements

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with storage_guard("reading results"):
            with self.connection.cursor() as cursor:
                cursor.execute(sql, [self.adapt(p) for p in params])
                names = [col[0] for col in cursor.description]
                return [
                    {name: self.convert(value) for name, value in zip(names, row)}
                    for row in cursor.fetchall()
                ]

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_value(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with storage_guard("reading results"):
            with self.connection.cursor() as cursor:
                cursor.execute(sql, [self.adapt(p) for p in params])
                row = cursor.fetchone()
        return row[0] if row else None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with storage_guard("writing results"):
            with self.connection.cursor() as cursor:
                cursor.execute(sql, [self.adapt(p) for p in params])
                return cursor.rowcount

    def insert(self, table_name: str, values: Dict[str, Any]) -> int:
        """Insert one row and return its id"""
        qn = self.quote
        names = list(values)
        sql = (
            f"INSERT INTO {qn(table_name)} ({', '.join(qn(n) for n in names)}) "
            f"VALUES ({', '.join(['%s'] * len(names))})"
        )
        returning = self.connection.features.can_return_columns_from_insert
        if returning:
            sql += f" RETURNING {qn('id')}"

        with storage_guard(f"inserting into {table_name}"):
            with self.connection.cursor() as cursor:
                cursor.execute(sql, [self.adapt(values[n]) for n in names])
                if returning:
                    return cursor.fetchone()[0]
                return self.connection.ops.last_insert_id(cursor, table_name, 'id')

    def adapt(self, value: Any) -> Any:
        """Adapt a Python value for use as a query parameter"""
        ops = self.connection.ops
        if isinstance(value, datetime.datetime):
            return ops.adapt_datetimefield_value(value)
        if isinstance(value, datetime.date):
            return ops.adapt_datefield_value(value)
        return value

    def convert(self, value: Any) -> Any:
        """Normalise a value read back from the driver"""
        if isinstance(value, datetime.datetime) and settings.USE_TZ and timezone.is_naive(value):
            return timezone.make_aware(value, datetime.timezone.utc)
        return value
