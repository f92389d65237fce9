"""
Date windows and table filtering for database dumps.

- DateFilterWindow: calendar-date range scoping a partial (weekly/monthly) dump
- TableFilter / DumpFilterPolicy: which tables each connection dumps, and
  under which file name
- SchemaInspector: table/view metadata and log-row deletion via SQLAlchemy
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .dumpers import Dumper, DumpFailure

logger = logging.getLogger(__name__)


MODE_NONE = 'none'
MODE_WEEK = 'week'
MODE_MONTH = 'month'

DEFAULT_LOG_TABLES = (
    'auth_log',

    'queue_error_log',
    'query_slow_log',
    'gc_log_queues',

    'union_logs',
    'union_logs_items',
    'union_logs_actions',
    'union_logs_parents',
    'union_logs_data_changed',

    'telescope_entries',
    'telescope_monitoring',
    'telescope_entries_tags',

    'z_log',
    'z_mrp_log',
    'z_dpth_log',
    'z_dpj_log',
    'z_members_log',
    'z_reports_log',
    'z_payments_log',
)

DateLike = Union[date, datetime, str]


def parse_day(value: DateLike) -> date:
    """
    Parse a reference day.

    Accepts date, datetime or an ISO string ("2024-03-14" or "2024-03-14T10:00:00").
    Time of day is discarded.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(value.strip()).date()
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid date: {value!r}")


@dataclass(frozen=True)
class DateFilterWindow:
    """Inclusive [start_date, end_date] window; mode 'none' means no filter."""

    mode: str = MODE_NONE
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        if self.mode not in (MODE_NONE, MODE_WEEK, MODE_MONTH):
            raise ValueError(f"Invalid date filter mode: {self.mode}")
        if self.mode == MODE_NONE:
            if self.start_date is not None or self.end_date is not None:
                raise ValueError("An unfiltered window cannot carry dates")
            return
        if self.start_date is None or self.end_date is None:
            raise ValueError(f"A {self.mode} window needs both start and end dates")
        if self.start_date > self.end_date:
            raise ValueError(f"Window start {self.start_date} is after end {self.end_date}")

    @classmethod
    def none(cls) -> 'DateFilterWindow':
        return cls()

    @classmethod
    def for_week(cls, reference: DateLike) -> 'DateFilterWindow':
        """Monday through Sunday of the week containing reference."""
        day = parse_day(reference)
        start = day - timedelta(days=day.weekday())
        return cls(MODE_WEEK, start, start + timedelta(days=6))

    @classmethod
    def for_month(cls, reference: DateLike) -> 'DateFilterWindow':
        """First through last day of the month containing reference."""
        day = parse_day(reference)
        last_day = calendar.monthrange(day.year, day.month)[1]
        return cls(MODE_MONTH, day.replace(day=1), day.replace(day=last_day))

    @property
    def active(self) -> bool:
        return self.mode != MODE_NONE

    @property
    def anchor(self) -> Optional[str]:
        """Label identifying the period: YYYY-MM for months, the start date for weeks."""
        if self.mode == MODE_MONTH:
            return self.start_date.strftime('%Y-%m')
        if self.mode == MODE_WEEK:
            return self.start_date.isoformat()
        return None

    @property
    def suffix(self) -> str:
        return {MODE_MONTH: 'monthly', MODE_WEEK: 'weekly'}.get(self.mode, 'full')

    def __str__(self):
        if not self.active:
            return 'no date filter'
        return f"{self.mode} {self.start_date.isoformat()}..{self.end_date.isoformat()}"


class SchemaInspector:
    """
    Metadata queries and log-row deletion for one database connection.

    The engine is created lazily from the SQLAlchemy URL and disposed with
    dispose().
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        self.url = url
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.url)
        return self._engine

    def table_names(self) -> List[str]:
        try:
            return inspect(self.engine).get_table_names()
        except SQLAlchemyError as e:
            raise DumpFailure(f"Failed to list tables: {e}")

    def view_names(self) -> List[str]:
        try:
            return inspect(self.engine).get_view_names()
        except SQLAlchemyError as e:
            raise DumpFailure(f"Failed to list views: {e}")

    def delete_rows_between(
        self,
        tables: Iterable[str],
        start_date: date,
        end_date: date,
        column: str = 'created_at'
    ) -> Dict[str, int]:
        """
        Delete rows whose DATE(column) lies inside [start_date, end_date].

        All tables are purged in a single transaction.

        Returns:
            Deleted row count per table
        """
        preparer = self.engine.dialect.identifier_preparer
        deleted = {}

        try:
            with self.engine.begin() as conn:
                for table in tables:
                    statement = text(
                        f"DELETE FROM {preparer.quote(table)} "
                        f"WHERE DATE({preparer.quote(column)}) BETWEEN :start AND :end"
                    )
                    result = conn.execute(statement, {
                        'start': start_date.isoformat(),
                        'end': end_date.isoformat()
                    })
                    deleted[table] = result.rowcount
        except SQLAlchemyError as e:
            raise DumpFailure(f"Failed to delete log rows: {e}")

        return deleted

    def dispose(self):
        if self._engine is not None:
            self._engine.dispose()


@dataclass(frozen=True)
class TableFilter:
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    create_tables: bool = True

    def apply_to(self, dumper: Dumper):
        dumper.set_table_filter(self.include, self.exclude)
        dumper.set_create_tables(self.create_tables)


class DumpFilterPolicy:
    """
    Decides per connection which tables get dumped and how dump files are named.

    Connection roles:
    - primary: views are never dumped
    - log connections: only the log tables that exist; no DDL under a date window
    - without-logs connections: everything except log tables and views
    """

    def __init__(
        self,
        primary_connection: str = 'mysql',
        log_connections: Iterable[str] = ('mysql_dump_only_logs',),
        without_logs_connections: Iterable[str] = ('mysql_dump_without_logs',),
        log_tables: Iterable[str] = DEFAULT_LOG_TABLES,
        purge_log_rows: bool = False
    ):
        self.primary_connection = primary_connection
        self.log_connections = frozenset(log_connections)
        self.without_logs_connections = frozenset(without_logs_connections)
        # Keep configured order but drop duplicates
        self.log_tables = tuple(dict.fromkeys(log_tables))
        self.purge_log_rows = purge_log_rows

    @classmethod
    def from_config(cls, config, log_tables: Optional[Iterable[str]] = None) -> 'DumpFilterPolicy':
        return cls(
            primary_connection=config.PRIMARY_CONNECTION,
            log_connections=config.LOG_CONNECTIONS,
            without_logs_connections=config.WITHOUT_LOGS_CONNECTIONS,
            log_tables=log_tables if log_tables is not None else DEFAULT_LOG_TABLES,
            purge_log_rows=config.PURGE_LOG_ROWS
        )

    def is_log_connection(self, connection_key: str) -> bool:
        return connection_key in self.log_connections

    def existing_log_tables(self, inspector: SchemaInspector) -> Tuple[str, ...]:
        existing = set(inspector.table_names())
        return tuple(table for table in self.log_tables if table in existing)

    def resolve(
        self,
        connection_key: str,
        inspector: Optional[SchemaInspector],
        window: DateFilterWindow
    ) -> TableFilter:
        """
        Compute the table filter for a connection.

        Raises:
            DumpFailure: If the connection needs metadata but has no inspector,
                or the metadata query fails
        """
        is_primary = connection_key == self.primary_connection
        is_log = self.is_log_connection(connection_key)
        is_without_logs = connection_key in self.without_logs_connections

        if not (is_primary or is_log or is_without_logs):
            return TableFilter()

        if inspector is None:
            raise DumpFailure(
                f"Connection '{connection_key}' needs schema metadata but has no database url configured"
            )

        if is_log:
            include = self.existing_log_tables(inspector)
            if not include:
                raise DumpFailure(f"None of the log tables exist on connection '{connection_key}'")
            return TableFilter(include=include, create_tables=not window.active)

        views = tuple(inspector.view_names())

        if is_without_logs:
            return TableFilter(exclude=tuple(dict.fromkeys(self.log_tables + views)))

        return TableFilter(exclude=views)

    def dump_filename(
        self,
        connection_key: str,
        dumper: Dumper,
        window: DateFilterWindow,
        sanitized: bool = False
    ) -> str:
        """
        Build the dump file name.

        Format: {engine}-{db_name}-{key}[.sanitized].{extension}[.{compressor extension}]
        SQLite uses {engine}-{key}-database. A log connection under an active
        window uses the window anchor instead of the connection key so dumps of
        different periods never collide.
        """
        label = connection_key
        if window.active and self.is_log_connection(connection_key):
            label = window.anchor

        if dumper.engine == 'sqlite':
            name = f"{dumper.engine}-{label}-database"
        else:
            name = f"{dumper.engine}-{dumper.db_name}-{label}"

        if sanitized:
            name += '.sanitized'

        name += f".{dumper.extension}"

        compressor_extension = dumper.compressor_extension()
        if compressor_extension:
            name += f".{compressor_extension}"

        return name

    def should_purge(self, connection_key: str, window: DateFilterWindow) -> bool:
        return self.purge_log_rows and window.active and self.is_log_connection(connection_key)
