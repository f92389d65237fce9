"""
Backup job - orchestrates the complete backup workflow.

Workflow:
1. Check that at least one destination is configured
2. Create and empty the temporary workspace
3. Dump every configured database into the workspace
4. Select files (never the workspace or a local destination directory)
5. Build the manifest (dumps first, then files)
6. Stream the manifest into one archive
7. Copy the archive to every destination (failures isolated per destination)
8. Purge backed-up log rows (opt-in, date-filtered runs only)
9. Delete the workspace

Any failure before step 7, or in step 8, is fatal: it is logged, reported
as a JobFailed event and re-raised.
"""

import os
import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from backupkit.config import config as config_by_name
from .compression import ArchiveResult, ArchiveWriter, generate_archive_filename, insert_filename_marker
from .dumpers import Dumper
from .events import (
    ArchiveCreated,
    DestinationWriteSucceeded,
    JobFailed,
    LoggingEventSink,
    ManifestCreated,
    emit,
)
from .filters import DateFilterWindow, DumpFilterPolicy, SchemaInspector
from .manifest import Manifest
from .selection import FileSelection
from .storage import BackupDestination
from .workspace import TemporaryWorkspace

logger = logging.getLogger(__name__)

SANITIZED_MARKER = 'sanitized'


class ConfigurationError(Exception):
    """Raised when a backup job is configured in a way that cannot run."""
    pass


class NoDestinationsConfigured(ConfigurationError):
    pass


class DestinationNotConfigured(ConfigurationError):
    pass


class EmptyBackupError(ConfigurationError):
    pass


@dataclass(frozen=True)
class DatabaseConnection:
    """
    A logical database connection to dump.

    url is a SQLAlchemy URL used for metadata queries (views, existing log
    tables) and log-row purging; connections that need neither may omit it.
    """

    name: str
    dumper: Dumper
    url: Optional[str] = None


@dataclass(frozen=True)
class BackupOutcome:
    status: str
    archive_path: Optional[str] = None
    destination_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[BaseException] = None

    SUCCESS = 'success'
    PARTIAL_FAILURE = 'partial_failure'
    FATAL = 'fatal'

    @classmethod
    def success(cls, archive_path: str) -> 'BackupOutcome':
        return cls(cls.SUCCESS, archive_path)

    @classmethod
    def partial_failure(cls, archive_path: str, destination_errors: Dict[str, str]) -> 'BackupOutcome':
        return cls(cls.PARTIAL_FAILURE, archive_path, dict(destination_errors))

    @classmethod
    def fatal(cls, error: BaseException) -> 'BackupOutcome':
        return cls(cls.FATAL, error=error)

    @property
    def succeeded(self) -> bool:
        return self.status != self.FATAL


class BackupJob:
    """
    Orchestrates one backup: dumps, file selection, manifest, archive and
    replication.

    Setters mutate the job and return it for chaining. only_db_name() and
    only_backup_to() return a new, restricted job and leave this one as is.
    run() may not be called concurrently on the same instance.
    """

    def __init__(
        self,
        config=None,
        event_sink=None,
        filter_policy: Optional[DumpFilterPolicy] = None
    ):
        """
        Initialize backup job.

        Args:
            config: Config class/object (see backupkit.config); defaults to production
            event_sink: Receives lifecycle events; defaults to logging them
            filter_policy: Table filtering rules; defaults to one built from config
        """
        config = config or config_by_name['default']

        self.temporary_directory = config.TEMP_DIR
        self.filename_prefix = config.FILENAME_PREFIX
        self.archive_format = config.ARCHIVE_FORMAT
        self.compressor = config.DATABASE_DUMP_COMPRESSOR
        self.destination_workers = max(1, int(config.DESTINATION_WORKERS))
        self.sanitize_binary_path = config.SANITIZE_BINARY_PATH
        self.replacements_file = config.SANITIZE_REPLACEMENTS_FILE

        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self.filter_policy = filter_policy or DumpFilterPolicy.from_config(config)

        self.db_connections: Dict[str, DatabaseConnection] = {}
        self.backup_destinations: Tuple[BackupDestination, ...] = ()
        self.file_selection = FileSelection.create()
        self.sanitized = False
        self.send_notifications = True
        self.date_window = DateFilterWindow.none()
        self._filename = None

        self.workspace: Optional[TemporaryWorkspace] = None
        self.logs: List[str] = []
        self._inspectors: Dict[str, SchemaInspector] = {}
        self._pending_purges: List[Tuple[str, SchemaInspector, Tuple[str, ...]]] = []
        self._run_lock = threading.Lock()

        self.set_default_filename()

    # Configuration

    def dont_backup_filesystem(self) -> 'BackupJob':
        self.file_selection = FileSelection.create()
        return self

    def dont_backup_databases(self) -> 'BackupJob':
        self.db_connections = {}
        return self

    def set_file_selection(self, file_selection: FileSelection) -> 'BackupJob':
        self.file_selection = file_selection
        return self

    def set_db_connections(
        self,
        connections: Union[Mapping[str, Union[DatabaseConnection, Dumper]], Iterable[DatabaseConnection]]
    ) -> 'BackupJob':
        """
        Set the databases to dump, keyed by connection name (order is kept).

        Accepts a mapping of name -> DatabaseConnection or Dumper, or an
        iterable of DatabaseConnection.
        """
        if isinstance(connections, Mapping):
            items = [
                value if isinstance(value, DatabaseConnection) else DatabaseConnection(name, value)
                for name, value in connections.items()
            ]
        else:
            items = list(connections)

        self.db_connections = {connection.name: connection for connection in items}
        return self

    def set_backup_destinations(self, destinations: Iterable[BackupDestination]) -> 'BackupJob':
        self.backup_destinations = tuple(destinations)
        return self

    def only_db_name(self, allowed_db_names: Iterable[str]) -> 'BackupJob':
        """Return a copy of this job that only dumps the named connections."""
        allowed = set(allowed_db_names)
        return self._replace(db_connections={
            name: connection
            for name, connection in self.db_connections.items()
            if name in allowed
        })

    def only_backup_to(self, disk_name: str) -> 'BackupJob':
        """
        Return a copy of this job restricted to the named destination.

        Raises:
            DestinationNotConfigured: If no destination has that disk name
        """
        destinations = tuple(d for d in self.backup_destinations if d.disk_name == disk_name)

        if not destinations:
            raise DestinationNotConfigured(f"There is no backup destination with a disk named `{disk_name}`")

        return self._replace(backup_destinations=destinations)

    def set_sanitized(self) -> 'BackupJob':
        self.sanitized = True
        return self

    def set_filter_week(self, day) -> 'BackupJob':
        return self._set_date_window(DateFilterWindow.for_week, day)

    def set_filter_month(self, day) -> 'BackupJob':
        return self._set_date_window(DateFilterWindow.for_month, day)

    def _set_date_window(self, build, day) -> 'BackupJob':
        if self.date_window.active:
            raise ConfigurationError(f"A date filter is already set ({self.date_window})")
        try:
            self.date_window = build(day)
        except ValueError as e:
            raise ConfigurationError(str(e))
        return self

    def disable_notifications(self) -> 'BackupJob':
        self.send_notifications = False
        return self

    def set_default_filename(self) -> 'BackupJob':
        self._filename = generate_archive_filename(self.archive_format)
        return self

    def set_filename(self, filename: str) -> 'BackupJob':
        self._filename = filename
        return self

    @property
    def filename(self) -> str:
        if self.sanitized:
            return insert_filename_marker(self._filename, SANITIZED_MARKER)
        return self._filename

    def _replace(self, **changes) -> 'BackupJob':
        job = copy.copy(self)
        job._run_lock = threading.Lock()
        job.file_selection = self.file_selection.excluding([])
        job.logs = []
        job._inspectors = {}
        job._pending_purges = []
        job.workspace = None
        for name, value in changes.items():
            setattr(job, name, value)
        return job

    # Execution

    def run(self) -> BackupOutcome:
        """
        Execute the backup.

        Returns:
            BackupOutcome, success or partial_failure (some destinations failed)

        Raises:
            ConfigurationError: If no destinations are configured, the backup is
                empty, or the job is already running
            DumpFailure: If any database dump fails
            ArchiveWriteFailure: If the archive cannot be written
        """
        if not self._run_lock.acquire(blocking=False):
            raise ConfigurationError("This backup job is already running")

        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self) -> BackupOutcome:
        self.logs = []
        self._pending_purges = []
        stage = 'validate'

        try:
            if not self.backup_destinations:
                raise NoDestinationsConfigured("There are no backup destinations specified")

            stage = 'workspace'
            self.workspace = TemporaryWorkspace(self.temporary_directory)
            self.workspace.create()
            self._log(f"Temporary directory: {self.workspace.root}")

            stage = 'dump'
            database_dumps = self._dump_databases()

            stage = 'select'
            self._log("Determining files to backup...")
            selected_files = self.files_to_be_backed_up()

            stage = 'manifest'
            manifest = self._create_backup_manifest(database_dumps, selected_files)

            if not manifest.count():
                raise EmptyBackupError("There are no files to be backed up")

            stage = 'archive'
            archive = self._create_archive(manifest)

            stage = 'replicate'
            destination_errors = self._copy_to_backup_destinations(archive.path)

            stage = 'purge'
            if len(destination_errors) < len(self.backup_destinations):
                self._purge_log_rows()
            elif self._pending_purges:
                self._log("No destination received the archive, log rows are kept", logging.WARNING)

        except Exception as e:
            self._log(f"Backup failed during {stage} because {e}", logging.ERROR)
            self._send_notification(JobFailed(e, stage=stage))
            raise

        finally:
            self._dispose_inspectors()
            self._cleanup()

        archive_name = os.path.basename(archive.path)
        if destination_errors:
            self._log(f"Backup completed with {len(destination_errors)} failed destination(s)", logging.WARNING)
            return BackupOutcome.partial_failure(archive_name, destination_errors)

        self._log("Backup completed successfully")
        return BackupOutcome.success(archive_name)

    def _dump_databases(self) -> List[str]:
        """
        Dump every configured connection into the workspace.

        Returns:
            Paths of the dump files, in connection order

        Raises:
            DumpFailure: If any connection fails to dump
        """
        dump_paths = []

        for key, connection in self.db_connections.items():
            dumper = connection.dumper
            inspector = self._inspector_for(connection)

            # Dumpers are shared with restricted copies of this job; each run
            # sets their full state
            table_filter = self.filter_policy.resolve(key, inspector, self.date_window)
            table_filter.apply_to(dumper)
            dumper.clear_date_window()

            window_applied = False
            if self.date_window.active:
                if dumper.supports_date_window:
                    dumper.set_date_window(self.date_window.start_date, self.date_window.end_date)
                    window_applied = True
                else:
                    self._log(
                        f"{dumper.engine} cannot filter rows by date; dumping all rows of ({key})",
                        logging.WARNING
                    )

            if self.sanitized:
                dumper.set_sanitized(True, self.sanitize_binary_path, self.replacements_file)
            else:
                dumper.set_sanitized(False)

            dumper.use_compressor(self.compressor)

            filename = self.filter_policy.dump_filename(key, dumper, self.date_window, self.sanitized)
            dump_path = self.workspace.path('db-dumps', filename)

            self._log(f"Dumping database {dumper.db_name} with connection ({key})...")
            dumper.dump_to_file(dump_path)
            dump_paths.append(dump_path)

            if window_applied and self.filter_policy.should_purge(key, self.date_window):
                self._pending_purges.append((key, inspector, table_filter.include))

        return dump_paths

    def files_to_be_backed_up(self) -> List[str]:
        """Selected files, never including the workspace or local destination directories."""
        selection = self.file_selection.excluding(self._directories_used_by_backup_job())
        return list(selection.selected_files())

    def _directories_used_by_backup_job(self) -> List[str]:
        directories = [
            destination.backup_directory_path()
            for destination in self.backup_destinations
            if destination.filesystem_type == 'local'
        ]
        if self.workspace is not None:
            directories.append(self.workspace.root)
        return directories

    def _create_backup_manifest(self, database_dumps: List[str], selected_files: List[str]) -> Manifest:
        manifest = (
            Manifest.create(self.workspace.path('manifest.txt'))
            .add_files(database_dumps)
            .add_files(selected_files)
        )

        self._log(f"Manifest contains {manifest.count()} entries")
        self._send_notification(ManifestCreated(manifest.count(), manifest.view()))

        return manifest

    def _create_archive(self, manifest: Manifest) -> ArchiveResult:
        self._log(f"Zipping {manifest.count()} files and directories...")

        archive_path = self.workspace.path(f"{self.filename_prefix}{self.filename}")
        writer = ArchiveWriter(archive_path, self.archive_format, relative_to=self.workspace.root)
        archive = writer.write(manifest.view())

        if archive.skipped:
            self._log(f"Skipped {len(archive.skipped)} unreadable entries", logging.WARNING)
        self._log(
            f"Created archive containing {archive.entry_count} files. "
            f"Size is {archive.human_readable_size}"
        )
        self._send_notification(ArchiveCreated(archive.path, archive.size, archive.entry_count))

        return archive

    def _copy_to_backup_destinations(self, archive_path: str) -> Dict[str, str]:
        """
        Copy the archive to every destination in parallel.

        Returns:
            Error message per failed disk name (empty when all succeeded)
        """
        destinations = [d.with_filter_suffix(self.date_window) for d in self.backup_destinations]
        errors = {}

        workers = min(self.destination_workers, len(destinations))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._copy_to_destination, destination, archive_path): destination
                for destination in destinations
            }
            for future in as_completed(futures):
                error = future.result()
                if error is not None:
                    errors[futures[future].disk_name] = str(error)

        return errors

    def _copy_to_destination(self, destination: BackupDestination, archive_path: str) -> Optional[Exception]:
        try:
            self._log(f"Copying archive to disk named {destination.disk_name}...")
            location = destination.write(archive_path)
            self._log(f"Successfully copied archive to disk named {destination.disk_name} ({location})")
            self._send_notification(DestinationWriteSucceeded(destination.disk_name))
            return None
        except Exception as e:
            self._log(f"Copying archive to {destination.disk_name} failed because: {e}", logging.ERROR)
            self._send_notification(JobFailed(e, disk_name=destination.disk_name, stage='replicate'))
            return e

    def _purge_log_rows(self):
        window = self.date_window
        for key, inspector, tables in self._pending_purges:
            deleted = inspector.delete_rows_between(tables, window.start_date, window.end_date)
            self._log(
                f"Deleted {sum(deleted.values())} log rows of {window} from connection ({key})"
            )

    def _inspector_for(self, connection: DatabaseConnection) -> Optional[SchemaInspector]:
        if not connection.url:
            return None
        if connection.name not in self._inspectors:
            self._inspectors[connection.name] = SchemaInspector(connection.url)
        return self._inspectors[connection.name]

    def _dispose_inspectors(self):
        for inspector in self._inspectors.values():
            inspector.dispose()
        self._inspectors = {}

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.workspace is not None:
            self.workspace.delete()
            self._log("Cleaned up temporary directory")
            self.workspace = None

    def _send_notification(self, event):
        if self.send_notifications:
            emit(self.event_sink, event)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a timestamped line to the run log and forward it to the logger.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
