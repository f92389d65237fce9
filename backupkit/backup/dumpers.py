"""
Database dumpers.

Each dumper wraps a dump tool (mysqldump, pg_dump, sqlite3) and streams its
output, optionally piped through a compressor, into a file:
- MySqlDumper: table filters, DATE(created_at) row window, data-only dumps,
  sanitized dumps through a replacement-rules aware mysqldump
- PostgreSqlDumper: table filters and data-only dumps
- SqliteDumper: whole database or selected tables
"""

import os
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DUMP_TIMEOUT = 3600  # 1 hour per database dump


class DumpFailure(Exception):
    """Raised when a database dump fails."""
    pass


@dataclass(frozen=True)
class Compressor:
    name: str
    command: Tuple[str, ...]
    extension: str


COMPRESSORS = {
    'gzip': Compressor('gzip', ('gzip', '-c'), 'gz'),
    'bzip2': Compressor('bzip2', ('bzip2', '-c'), 'bz2'),
}


def get_compressor(kind: Union[str, Compressor]) -> Compressor:
    """
    Resolve a compressor by name.

    Raises:
        ValueError: If the compressor is unknown
    """
    if isinstance(kind, Compressor):
        return kind
    if kind not in COMPRESSORS:
        raise ValueError(
            f"Invalid compressor: {kind}. "
            f"Valid options: {list(COMPRESSORS.keys())}"
        )
    return COMPRESSORS[kind]


class Dumper:
    """
    Base class for database dumpers.

    Subclasses build the dump command; this class runs it and writes the
    output file.
    """

    engine = None
    extension = 'sql'
    binary_name = None
    supports_date_window = False
    supports_sanitizing = False

    def __init__(
        self,
        db_name: str,
        host: str = 'localhost',
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        dump_binary_path: str = '',
        extra_options: Optional[Iterable[str]] = None,
        date_column: str = 'created_at',
        timeout: int = DUMP_TIMEOUT
    ):
        self.db_name = db_name
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.dump_binary_path = dump_binary_path
        self.extra_options = list(extra_options or [])
        self.date_column = date_column
        self.timeout = timeout

        self.included_tables: List[str] = []
        self.excluded_tables: List[str] = []
        self.create_tables = True
        self.start_date: Optional[date] = None
        self.end_date: Optional[date] = None
        self.sanitized = False
        self.sanitize_binary_path: Optional[str] = None
        self.replacements_file: Optional[str] = None
        self.compressor: Optional[Compressor] = None

    def __repr__(self):
        return f'<{self.__class__.__name__} db={self.db_name}>'

    def include_tables(self, tables: Iterable[str]) -> 'Dumper':
        self.included_tables = list(tables)
        return self

    def exclude_tables(self, tables: Iterable[str]) -> 'Dumper':
        self.excluded_tables = list(tables)
        return self

    def set_table_filter(self, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> 'Dumper':
        self.include_tables(include)
        self.exclude_tables(exclude)
        return self

    def dont_create_tables(self) -> 'Dumper':
        return self.set_create_tables(False)

    def set_create_tables(self, create_tables: bool) -> 'Dumper':
        self.create_tables = create_tables
        return self

    def set_date_window(self, start_date: date, end_date: date) -> 'Dumper':
        if start_date > end_date:
            raise ValueError(f"Window start {start_date} is after end {end_date}")
        self.start_date = start_date
        self.end_date = end_date
        return self

    def clear_date_window(self) -> 'Dumper':
        self.start_date = None
        self.end_date = None
        return self

    def set_sanitized(
        self,
        sanitized: bool = True,
        binary_path: Optional[str] = None,
        replacements_file: Optional[str] = None
    ) -> 'Dumper':
        """
        Route the dump through the data-scrubbing tool.

        Raises:
            DumpFailure: If this engine cannot produce sanitized dumps
        """
        if sanitized and not self.supports_sanitizing:
            raise DumpFailure(f"{self.engine} dumps cannot be sanitized")
        self.sanitized = sanitized
        self.sanitize_binary_path = binary_path
        self.replacements_file = replacements_file
        return self

    def use_compressor(self, kind: Union[str, Compressor, None]) -> 'Dumper':
        """Set the single active compressor; None disables compression."""
        self.compressor = get_compressor(kind) if kind is not None else None
        return self

    def compressor_extension(self) -> Optional[str]:
        return self.compressor.extension if self.compressor else None

    def add_extra_option(self, option: str) -> 'Dumper':
        self.extra_options.append(option)
        return self

    def _binary(self) -> str:
        directory = self.dump_binary_path
        if self.sanitized and self.sanitize_binary_path:
            directory = self.sanitize_binary_path
        if directory:
            return os.path.join(directory, self.binary_name)
        return self.binary_name

    def get_dump_command(self) -> List[str]:
        raise NotImplementedError

    def _environment(self) -> Dict[str, str]:
        """Extra environment for the dump process (credentials stay out of argv)."""
        return {}

    def dump_to_file(self, path: str) -> str:
        """
        Dump the database into path.

        Returns:
            path

        Raises:
            DumpFailure: If the dump tool is missing, fails, times out or
                produces no output
        """
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        command = self.get_dump_command()
        env = dict(os.environ, **self._environment())

        logger.debug(f"Running dump command: {command[0]} for {self.db_name}")

        try:
            if self.compressor is None:
                self._run_plain(command, path, env)
            else:
                self._run_compressed(command, path, env)
        except FileNotFoundError as e:
            raise DumpFailure(f"Dump tool not found: {e.filename or command[0]}")
        except subprocess.TimeoutExpired:
            raise DumpFailure(f"Dump of {self.db_name} timed out after {self.timeout}s")

        if not os.path.exists(path) or os.path.getsize(path) == 0:
            raise DumpFailure(f"Dump of {self.db_name} produced an empty file")

        return path

    def _run_plain(self, command: List[str], path: str, env: Dict[str, str]):
        with open(path, 'wb') as output:
            result = subprocess.run(
                command, stdout=output, stderr=subprocess.PIPE, env=env, timeout=self.timeout
            )
        if result.returncode != 0:
            raise DumpFailure(
                f"{command[0]} exited with {result.returncode}: {_decode(result.stderr)}"
            )

    def _run_compressed(self, command: List[str], path: str, env: Dict[str, str]):
        # stderr of the dump goes to a temp file so a chatty dump tool cannot block on a full pipe
        with open(path, 'wb') as output, tempfile.TemporaryFile() as dump_errors:
            dump = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=dump_errors, env=env)
            try:
                compress = subprocess.Popen(
                    list(self.compressor.command), stdin=dump.stdout, stdout=output, stderr=subprocess.PIPE
                )
            except FileNotFoundError:
                dump.kill()
                dump.wait()
                raise
            # Let the dump receive SIGPIPE if the compressor exits early
            dump.stdout.close()

            try:
                _, compress_errors = compress.communicate(timeout=self.timeout)
                dump_returncode = dump.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                dump.kill()
                compress.kill()
                dump.wait()
                compress.wait()
                raise

            dump_errors.seek(0)
            dump_stderr = dump_errors.read()

        if dump_returncode != 0:
            raise DumpFailure(f"{command[0]} exited with {dump_returncode}: {_decode(dump_stderr)}")
        if compress.returncode != 0:
            raise DumpFailure(
                f"{self.compressor.name} exited with {compress.returncode}: {_decode(compress_errors)}"
            )


def _decode(stderr: Optional[bytes]) -> str:
    return (stderr or b'').decode('utf-8', errors='replace').strip()


class MySqlDumper(Dumper):
    engine = 'mysql'
    binary_name = 'mysqldump'
    supports_date_window = True
    supports_sanitizing = True

    def get_dump_command(self) -> List[str]:
        command = [
            self._binary(),
            '--single-transaction',
            '--skip-comments',
            '--extended-insert',
            f'--host={self.host}',
        ]
        if self.port:
            command.append(f'--port={self.port}')
        if self.username:
            command.append(f'--user={self.username}')

        if not self.create_tables:
            command.append('--no-create-info')

        if self.start_date is not None:
            command.append(
                f"--where=DATE(`{self.date_column}`) BETWEEN "
                f"'{self.start_date.isoformat()}' AND '{self.end_date.isoformat()}'"
            )

        if self.sanitized and self.replacements_file:
            command.append(f'--gdpr-replacements-file={self.replacements_file}')

        command.extend(self.extra_options)

        for table in self.excluded_tables:
            command.append(f'--ignore-table={self.db_name}.{table}')

        command.append(self.db_name)
        command.extend(self.included_tables)
        return command

    def _environment(self) -> Dict[str, str]:
        return {'MYSQL_PWD': self.password} if self.password else {}


class PostgreSqlDumper(Dumper):
    engine = 'postgresql'
    binary_name = 'pg_dump'

    def get_dump_command(self) -> List[str]:
        command = [self._binary(), f'--host={self.host}']
        if self.port:
            command.append(f'--port={self.port}')
        if self.username:
            command.append(f'--username={self.username}')

        if not self.create_tables:
            command.append('--data-only')

        command.extend(self.extra_options)

        for table in self.included_tables:
            command.append(f'--table={table}')
        for table in self.excluded_tables:
            command.append(f'--exclude-table={table}')

        command.append(self.db_name)
        return command

    def _environment(self) -> Dict[str, str]:
        return {'PGPASSWORD': self.password} if self.password else {}


class SqliteDumper(Dumper):
    engine = 'sqlite'
    binary_name = 'sqlite3'

    def get_dump_command(self) -> List[str]:
        if self.excluded_tables:
            logger.warning(f"sqlite3 cannot exclude tables; dumping all of {self.db_name}")
        dump = ' '.join(['.dump'] + self.included_tables)
        return [self._binary(), *self.extra_options, self.db_name, dump]


DUMPERS = {
    'mysql': MySqlDumper,
    'mariadb': MySqlDumper,
    'pgsql': PostgreSqlDumper,
    'postgresql': PostgreSqlDumper,
    'sqlite': SqliteDumper,
}


def create_dumper(engine: str, **settings) -> Dumper:
    """
    Factory function to create the dumper for a database engine.

    Args:
        engine: 'mysql', 'mariadb', 'pgsql', 'postgresql' or 'sqlite'
        **settings: Keyword arguments for the dumper (db_name, host, ...)

    Raises:
        ValueError: If engine is invalid
    """
    if engine not in DUMPERS:
        raise ValueError(
            f"Invalid database engine: {engine}. "
            f"Valid options: {list(DUMPERS.keys())}"
        )
    return DUMPERS[engine](**settings)
