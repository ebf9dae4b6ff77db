"""
Generic Result Store

CRUD, filtering, aggregation and column introspection over module result
tables whose column set is only known at runtime. Every read and write is
scoped to the acting psychologist.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from schoolpsy.audit.models import AuditEntry
from schoolpsy.audit.services import AuditLog
from schoolpsy.core.context import Actor

from . import signals
from .base import Computer, Interpreter
from .catalog import ModuleCatalog
from .conf import ModuleSystemConfig
from .exceptions import (
    AccessDenied, DuplicateRecord, InconsistentState, ModuleError, ModuleNotFoundError,
    ModuleStateError, RecordNotFound, ResultTableMissingError, ResultValidationError, UnknownField,
)
from .factory import ModuleInstanceFactory
from .models import InstalledModule
from .registry import ModuleRegistry
from .storage import COMMON_COLUMNS, ColumnInfo, ResultTableStorage

logger = logging.getLogger(__name__)


# Common columns assigned by the store, never by callers or compute hooks
READ_ONLY_COLUMNS = ('id', 'created_at')


@dataclass(frozen=True)
class ResultRecord:
    """
    One test administration.

    Common fields are typed attributes; module-specific values are kept in
    table column order in ``fields``.
    """
    module_key: str
    id: int
    child_id: int
    psychologist_id: int
    test_date: datetime.date
    created_at: Optional[datetime.datetime]
    fields: Tuple[Tuple[str, Any], ...] = ()
    annotations: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self.fields)

    def get(self, name: str, default: Any = None) -> Any:
        if name in COMMON_COLUMNS:
            return getattr(self, name)
        return self.values.get(name, default)

    def as_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'child_id': self.child_id,
            'psychologist_id': self.psychologist_id,
            'test_date': self.test_date,
            'created_at': self.created_at,
        }
        data.update(self.fields)
        return data


@dataclass(frozen=True)
class ResultFilters:
    """
    Filters for tenant-scoped result queries.

    ``where`` maps module columns to a value, or to a ``(min, max)`` pair
    where either bound may be None.
    """
    child_id: Optional[int] = None
    date_from: Optional[datetime.date] = None
    date_to: Optional[datetime.date] = None
    where: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None
    offset: int = 0
    ascending: bool = False


@dataclass(frozen=True)
class Aggregation:
    """Value distribution of one numeric column within a tenant"""
    field: str
    count: int
    average: Optional[float]
    minimum: Any = None
    maximum: Any = None
    distribution: Dict[Any, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ResultStats:
    """Summary of a tenant's results in one module"""
    total: int
    unique_children: int
    avg_per_child: float
    first_test_date: Optional[datetime.date]
    last_test_date: Optional[datetime.date]


class ResultStore:
    """
    Uniform repository over module result tables.

    Creates and updates require an active module; reads and deletes work as
    long as the table exists, so historical data survives deactivation and
    uninstall without data removal.
    """

    def __init__(
        self,
        config: ModuleSystemConfig,
        catalog: ModuleCatalog,
        registry: ModuleRegistry,
        storage: ResultTableStorage,
        factory: ModuleInstanceFactory,
        audit: AuditLog,
        ownership_check: Optional[Callable[[int, int], bool]] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.registry = registry
        self.storage = storage
        self.factory = factory
        self.audit = audit
        self.ownership_check = ownership_check or import_string(config.child_ownership_check)

    @property
    def using(self) -> str:
        return self.storage.using

    # Introspection

    def introspect_columns(self, module_key: str) -> List[ColumnInfo]:
        """
        Live column set of a module's result table.

        Raises:
            ModuleNotFoundError: If the module is unknown
            ResultTableMissingError: If its table does not exist
        """
        table_name, _ = self._target(module_key)
        return self.storage.get_columns(table_name)

    # Mutations

    def create(self, module_key: str, actor: Actor, fields: Dict[str, Any]) -> ResultRecord:
        """
        Store a new result.

        Args:
            module_key: Active module
            actor: Acting psychologist
            fields: child_id, test_date and module columns; psychologist_id,
                when given, must be the actor's

        Returns:
            The stored record, with computed fields and annotations

        Raises:
            AccessDenied: If the child belongs to another psychologist
            DuplicateRecord: If the child already has a result on that date
            UnknownField: If a field is not a column of the table
            ResultValidationError: If common fields are missing or invalid
        """
        table_name, module_row = self._target(module_key, writable=True)
        columns = self._column_names(table_name)
        data = self._clean_fields(module_key, fields, columns, actor)

        errors = []
        child_id = self._clean_child_id(data.pop('child_id', None), errors)
        test_date = self._clean_test_date(data.pop('test_date', None), errors)
        if errors:
            raise ResultValidationError(errors)

        self._check_child(child_id, actor)

        common = {'child_id': child_id, 'psychologist_id': actor.psychologist_id, 'test_date': test_date}
        data.update(self._compute(module_key, {**data, **common}, columns))

        with transaction.atomic(using=self.using):
            self._check_duplicate(module_key, table_name, child_id, actor, test_date)
            values = {**common, 'created_at': timezone.now(), **data}
            try:
                with transaction.atomic(using=self.using):
                    record_id = self.storage.insert(table_name, values)
            except IntegrityError as e:
                self._integrity_failure(module_key, table_name, child_id, actor, test_date, e)

            record = self._fetch(module_key, table_name, record_id, actor)

            self._after_commit(
                'create', module_key, actor, record.id,
                f"Created result #{record.id} for child {child_id} on {test_date}",
                details={'record': record.as_dict()},
                signal=signals.result_created,
                record=record,
            )

        return self._annotate(record, module_row)

    def update(self, module_key: str, record_id: int, actor: Actor, fields: Dict[str, Any]) -> ResultRecord:
        """
        Change a stored result, recomputing derived fields.

        Returns:
            The updated record; the unchanged record when nothing differs

        Raises:
            RecordNotFound: If the record does not exist
            AccessDenied: If it belongs to another psychologist
        """
        table_name, module_row = self._target(module_key, writable=True)
        columns = self._column_names(table_name)
        existing = self._fetch(module_key, table_name, record_id, actor)
        data = self._clean_fields(module_key, fields, columns, actor)

        errors = []
        if 'child_id' in data:
            data['child_id'] = self._clean_child_id(data['child_id'], errors)
        if 'test_date' in data:
            data['test_date'] = self._clean_test_date(data['test_date'], errors)
        if errors:
            raise ResultValidationError(errors)

        if 'child_id' in data and data['child_id'] != existing.child_id:
            self._check_child(data['child_id'], actor)

        merged = {**existing.as_dict(), **data}
        for name in READ_ONLY_COLUMNS:
            merged.pop(name, None)
        data.update(self._compute(module_key, merged, columns))

        changes = {
            name: [existing.get(name), value]
            for name, value in data.items()
            if existing.get(name) != value
        }
        if not changes:
            return self._annotate(existing, module_row)

        child_id = data.get('child_id', existing.child_id)
        test_date = data.get('test_date', existing.test_date)
        qn = self.storage.quote

        with transaction.atomic(using=self.using):
            self._check_duplicate(module_key, table_name, child_id, actor, test_date, exclude_id=record_id)

            assignments = ', '.join(f"{qn(name)} = %s" for name in changes)
            sql = (
                f"UPDATE {qn(table_name)} SET {assignments} "
                f"WHERE {qn('id')} = %s AND {qn('psychologist_id')} = %s"
            )
            params = [changes[name][1] for name in changes] + [record_id, actor.psychologist_id]
            try:
                with transaction.atomic(using=self.using):
                    self.storage.execute(sql, params)
            except IntegrityError as e:
                self._integrity_failure(module_key, table_name, child_id, actor, test_date, e, exclude_id=record_id)

            record = self._fetch(module_key, table_name, record_id, actor)

            self._after_commit(
                'update', module_key, actor, record_id,
                f"Updated result #{record_id}: {', '.join(changes)}",
                details=changes,
                signal=signals.result_updated,
                record=record, changes=changes,
            )

        return self._annotate(record, module_row)

    def delete(self, module_key: str, record_id: int, actor: Actor) -> ResultRecord:
        """
        Delete a stored result.

        Returns:
            Snapshot of the deleted record
        """
        table_name, _ = self._target(module_key)
        qn = self.storage.quote

        with transaction.atomic(using=self.using):
            snapshot = self._fetch(module_key, table_name, record_id, actor)
            self.storage.execute(
                f"DELETE FROM {qn(table_name)} WHERE {qn('id')} = %s AND {qn('psychologist_id')} = %s",
                [record_id, actor.psychologist_id],
            )

            self._after_commit(
                'delete', module_key, actor, record_id,
                f"Deleted result #{record_id} of child {snapshot.child_id} on {snapshot.test_date}",
                details={'record': snapshot.as_dict()},
                signal=signals.result_deleted,
                snapshot=snapshot,
            )

        return snapshot

    # Reads

    def find_by_id(self, module_key: str, record_id: int, actor: Actor) -> ResultRecord:
        """
        Raises:
            RecordNotFound: If the record does not exist
            AccessDenied: If it belongs to another psychologist
        """
        table_name, module_row = self._target(module_key)
        return self._annotate(self._fetch(module_key, table_name, record_id, actor), module_row)

    def find_by_tenant(self, module_key: str, actor: Actor,
                       filters: Optional[ResultFilters] = None) -> List[ResultRecord]:
        """
        Results of the acting psychologist, newest test date first unless
        ``filters.ascending``; ties are ordered by insertion time.
        """
        filters = filters or ResultFilters()
        table_name, module_row = self._target(module_key)
        where, params = self._filter_clauses(module_key, table_name, filters)

        qn = self.storage.quote
        direction = 'ASC' if filters.ascending else 'DESC'
        sql = (
            f"SELECT * FROM {qn(table_name)} WHERE {qn('psychologist_id')} = %s{where} "
            f"ORDER BY {qn('test_date')} {direction}, {qn('created_at')} ASC, {qn('id')} ASC"
        )
        params = [actor.psychologist_id] + params

        if filters.limit is not None:
            sql += " LIMIT %s OFFSET %s"
            params += [int(filters.limit), int(filters.offset)]
            rows = self.storage.fetch_all(sql, params)
        else:
            rows = self.storage.fetch_all(sql, params)[filters.offset:]

        return [self._annotate(self._to_record(module_key, row), module_row) for row in rows]

    def count_by_tenant(self, module_key: str, actor: Actor, filters: Optional[ResultFilters] = None) -> int:
        filters = filters or ResultFilters()
        table_name, _ = self._target(module_key)
        where, params = self._filter_clauses(module_key, table_name, filters)

        qn = self.storage.quote
        return self.storage.fetch_value(
            f"SELECT COUNT(*) FROM {qn(table_name)} WHERE {qn('psychologist_id')} = %s{where}",
            [actor.psychologist_id] + params,
        ) or 0

    def find_by_child(self, module_key: str, child_id: int, actor: Actor,
                      date_from: Optional[datetime.date] = None, date_to: Optional[datetime.date] = None,
                      limit: Optional[int] = None) -> List[ResultRecord]:
        """
        Results of one child.

        Raises:
            AccessDenied: If the child belongs to another psychologist
        """
        self._check_child(child_id, actor)
        return self.find_by_tenant(
            module_key, actor,
            ResultFilters(child_id=child_id, date_from=date_from, date_to=date_to, limit=limit),
        )

    def recent(self, module_key: str, actor: Actor, limit: int = 10) -> List[ResultRecord]:
        """Most recently stored results of the acting psychologist"""
        table_name, module_row = self._target(module_key)
        qn = self.storage.quote
        rows = self.storage.fetch_all(
            f"SELECT * FROM {qn(table_name)} WHERE {qn('psychologist_id')} = %s "
            f"ORDER BY {qn('created_at')} DESC, {qn('id')} DESC LIMIT %s",
            [actor.psychologist_id, int(limit)],
        )
        return [self._annotate(self._to_record(module_key, row), module_row) for row in rows]

    def aggregate(self, module_key: str, field_name: str, actor: Actor) -> Aggregation:
        """
        Distribution and average of a numeric module column.

        The column is checked against the live schema before any query on the
        result data is built.

        Raises:
            UnknownField: If the column does not exist or is not a numeric module column
        """
        table_name, _ = self._target(module_key)
        column = next((c for c in self.storage.get_columns(table_name) if c.name == field_name), None)
        if column is None:
            raise UnknownField(module_key, field_name)
        if column.is_common or not column.is_numeric:
            raise UnknownField(
                module_key, field_name,
                f"Field '{field_name}' of module {module_key} is not a numeric result column",
            )

        qn = self.storage.quote
        col = qn(field_name)
        base = f"FROM {qn(table_name)} WHERE {qn('psychologist_id')} = %s AND {col} IS NOT NULL"
        params = [actor.psychologist_id]

        summary = self.storage.fetch_one(
            f"SELECT COUNT({col}) AS count, AVG({col}) AS average, "
            f"MIN({col}) AS minimum, MAX({col}) AS maximum {base}",
            params,
        )
        distribution = self.storage.fetch_all(
            f"SELECT {col} AS value, COUNT(*) AS count {base} GROUP BY {col} ORDER BY {col}",
            params,
        )

        return Aggregation(
            field=field_name,
            count=summary['count'] or 0,
            average=float(summary['average']) if summary['average'] is not None else None,
            minimum=summary['minimum'],
            maximum=summary['maximum'],
            distribution={row['value']: row['count'] for row in distribution},
        )

    def stats(self, module_key: str, actor: Actor) -> ResultStats:
        """Totals and first/last test date of the acting psychologist"""
        table_name, _ = self._target(module_key)
        qn = self.storage.quote
        tenant = f"FROM {qn(table_name)} WHERE {qn('psychologist_id')} = %s"
        params = [actor.psychologist_id]

        totals = self.storage.fetch_one(
            f"SELECT COUNT(*) AS total, COUNT(DISTINCT {qn('child_id')}) AS children {tenant}",
            params,
        )
        total = totals['total'] or 0
        children = totals['children'] or 0

        def edge(direction):
            value = self.storage.fetch_value(
                f"SELECT {qn('test_date')} {tenant} "
                f"ORDER BY {qn('test_date')} {direction}, {qn('created_at')} ASC, {qn('id')} ASC LIMIT 1",
                params,
            )
            return self._as_date(value)

        return ResultStats(
            total=total,
            unique_children=children,
            avg_per_child=round(total / children, 2) if children else 0.0,
            first_test_date=edge('ASC'),
            last_test_date=edge('DESC'),
        )

    def history(self, module_key: str, record_id: int, actor: Actor, limit: int = 20) -> List[AuditEntry]:
        """Audit entries of one record written by the acting psychologist"""
        return self.audit.history(
            module_key, limit=limit, record_id=record_id, psychologist_id=actor.psychologist_id,
        )

    # Helpers

    def _target(self, module_key: str, writable: bool = False) -> Tuple[str, Optional[InstalledModule]]:
        """Resolve the result table of a module, checking it may be used"""
        row = self.registry.get(module_key)

        if row is not None:
            table_name = row.table_name
        else:
            try:
                table_name = self.catalog.get(module_key).table_name
            except ModuleError as e:
                raise ModuleNotFoundError(f"Module not found: {module_key}") from e

        if writable and (row is None or not row.is_active):
            raise ModuleStateError(f"Module {module_key} is not active")

        if not self.storage.table_exists(table_name):
            if row is not None and row.is_installed:
                issue = InconsistentState(module_key, table_name, f"table {table_name} does not exist")
                logger.error(f"Result store: {issue}")
                raise issue
            raise ResultTableMissingError(f"Result table {table_name} of module {module_key} does not exist")

        return table_name, row

    def _column_names(self, table_name: str) -> List[str]:
        return [column.name for column in self.storage.get_columns(table_name)]

    def _clean_fields(self, module_key: str, fields: Dict[str, Any], columns: List[str],
                      actor: Actor) -> Dict[str, Any]:
        data = dict(fields)
        for name in data:
            if name not in columns:
                raise UnknownField(module_key, name)
            if name in READ_ONLY_COLUMNS:
                raise ResultValidationError(f"{name} is assigned by the store")

        psychologist_id = data.pop('psychologist_id', actor.psychologist_id)
        if str(psychologist_id) != str(actor.psychologist_id):
            raise AccessDenied("Results can only be stored for the acting psychologist")
        return data

    def _clean_child_id(self, value: Any, errors: List[str]) -> Optional[int]:
        if value is None or value == '':
            errors.append("child_id is required")
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            errors.append(f"child_id must be an integer, got {value!r}")
            return None

    def _clean_test_date(self, value: Any, errors: List[str]) -> Optional[datetime.date]:
        if value is None or value == '':
            errors.append("test_date is required")
            return None

        if isinstance(value, datetime.datetime):
            value = value.date()
        elif isinstance(value, str):
            try:
                value = datetime.date.fromisoformat(value)
            except ValueError:
                errors.append(f"test_date must be an ISO date (YYYY-MM-DD), got {value!r}")
                return None
        elif not isinstance(value, datetime.date):
            errors.append(f"test_date must be a date, got {value!r}")
            return None

        today = timezone.localdate()
        if value > today:
            errors.append("test_date cannot be in the future")
        elif value < self._earliest_test_date(today):
            errors.append(f"test_date cannot be more than {self.config.max_test_age_years} years ago")
        return value

    def _earliest_test_date(self, today: datetime.date) -> datetime.date:
        year = today.year - self.config.max_test_age_years
        try:
            return today.replace(year=year)
        except ValueError:
            # 29 February
            return today.replace(year=year, day=28)

    def _check_child(self, child_id: int, actor: Actor) -> None:
        if not self.ownership_check(child_id, actor.psychologist_id):
            raise AccessDenied(f"Child {child_id} does not belong to psychologist {actor.psychologist_id}")

    def _check_duplicate(self, module_key: str, table_name: str, child_id: int, actor: Actor,
                         test_date: datetime.date, exclude_id: Optional[int] = None) -> None:
        if self._duplicate_exists(table_name, child_id, actor, test_date, exclude_id):
            raise DuplicateRecord(
                f"Child {child_id} already has a {module_key} result on {test_date}"
            )

    def _duplicate_exists(self, table_name, child_id, actor, test_date, exclude_id=None) -> bool:
        qn = self.storage.quote
        sql = (
            f"SELECT {qn('id')} FROM {qn(table_name)} WHERE {qn('child_id')} = %s "
            f"AND {qn('psychologist_id')} = %s AND {qn('test_date')} = %s"
        )
        params = [child_id, actor.psychologist_id, test_date]
        if exclude_id is not None:
            sql += f" AND {qn('id')} <> %s"
            params.append(exclude_id)
        return self.storage.fetch_value(sql, params) is not None

    def _integrity_failure(self, module_key, table_name, child_id, actor, test_date, error, exclude_id=None):
        # Lost a race against a concurrent insert of the same administration
        self._check_duplicate(module_key, table_name, child_id, actor, test_date, exclude_id)
        raise ResultValidationError(f"Result violates a table constraint: {error}") from error

    def _compute(self, module_key: str, data: Dict[str, Any], columns: List[str]) -> Dict[str, Any]:
        instance = self._instance(module_key)
        if not isinstance(instance, Computer):
            return {}

        try:
            computed = dict(instance.compute(dict(data)) or {})
        except ValueError as e:
            raise ResultValidationError(f"Module {module_key} rejected the result: {e}") from e
        for name in computed:
            if name in COMMON_COLUMNS:
                raise ResultValidationError(f"Module {module_key} cannot compute common field {name}")
            if name not in columns:
                raise UnknownField(module_key, name, f"Module {module_key} computed unknown field '{name}'")
        return computed

    def _annotate(self, record: ResultRecord, row: Optional[InstalledModule]) -> ResultRecord:
        if row is None or not row.is_active:
            return record

        instance = self._instance(record.module_key)
        if not isinstance(instance, Interpreter):
            return record

        record.annotations.update(instance.interpret(record.as_dict()) or {})
        return record

    def _instance(self, module_key: str):
        instance = self.factory.cached(module_key)
        if instance is None:
            instance = self.factory.create(self.catalog.get(module_key))
        return instance

    def _fetch(self, module_key: str, table_name: str, record_id: int, actor: Actor) -> ResultRecord:
        qn = self.storage.quote
        owner = self.storage.fetch_value(
            f"SELECT {qn('psychologist_id')} FROM {qn(table_name)} WHERE {qn('id')} = %s",
            [record_id],
        )
        if owner is None:
            raise RecordNotFound(f"Result #{record_id} of module {module_key} not found")
        if str(owner) != str(actor.psychologist_id):
            raise AccessDenied(f"Result #{record_id} belongs to another psychologist")

        row = self.storage.fetch_one(
            f"SELECT * FROM {qn(table_name)} WHERE {qn('id')} = %s AND {qn('psychologist_id')} = %s",
            [record_id, actor.psychologist_id],
        )
        if row is None:
            raise RecordNotFound(f"Result #{record_id} of module {module_key} not found")
        return self._to_record(module_key, row)

    def _filter_clauses(self, module_key: str, table_name: str,
                        filters: ResultFilters) -> Tuple[str, List[Any]]:
        qn = self.storage.quote
        clauses = []
        params = []

        if filters.child_id is not None:
            clauses.append(f"{qn('child_id')} = %s")
            params.append(filters.child_id)
        if filters.date_from is not None:
            clauses.append(f"{qn('test_date')} >= %s")
            params.append(filters.date_from)
        if filters.date_to is not None:
            clauses.append(f"{qn('test_date')} <= %s")
            params.append(filters.date_to)

        if filters.where:
            columns = self._column_names(table_name)
            for name, value in filters.where.items():
                if name not in columns:
                    raise UnknownField(module_key, name)
                if name == 'psychologist_id':
                    raise AccessDenied("Queries are always scoped to the acting psychologist")

                if isinstance(value, (tuple, list)) and len(value) == 2:
                    low, high = value
                    if low is not None:
                        clauses.append(f"{qn(name)} >= %s")
                        params.append(low)
                    if high is not None:
                        clauses.append(f"{qn(name)} <= %s")
                        params.append(high)
                elif value is None:
                    clauses.append(f"{qn(name)} IS NULL")
                else:
                    clauses.append(f"{qn(name)} = %s")
                    params.append(value)

        where = ''.join(f" AND {clause}" for clause in clauses)
        return where, params

    def _to_record(self, module_key: str, row: Dict[str, Any]) -> ResultRecord:
        return ResultRecord(
            module_key=module_key,
            id=row['id'],
            child_id=row['child_id'],
            psychologist_id=row['psychologist_id'],
            test_date=self._as_date(row['test_date']),
            created_at=row.get('created_at'),
            fields=tuple((name, value) for name, value in row.items() if name not in COMMON_COLUMNS),
        )

    @staticmethod
    def _as_date(value: Any) -> Optional[datetime.date]:
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, str):
            return datetime.date.fromisoformat(value[:10])
        return value

    def _after_commit(self, action: str, module_key: str, actor: Actor, record_id: int,
                      description: str, details: dict, signal, **signal_kwargs) -> None:
        """Audit and signal a result mutation once it commits"""

        def committed():
            self.audit.record_safely(
                action, module_key, actor=actor, record_id=record_id,
                description=description, details=details,
            )
            responses = signal.send_robust(
                sender=self.__class__, module_key=module_key, record_id=record_id, actor=actor,
                **signal_kwargs
            )
            for receiver, response in responses:
                if isinstance(response, Exception):
                    logger.warning(f"Receiver {receiver} failed for {action} on {module_key}: {response}")

        transaction.on_commit(committed, using=self.using)
