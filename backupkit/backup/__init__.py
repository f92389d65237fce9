"""
Backup module for backupkit.

This module handles the core backup functionality including:
- Database dumps with table and date-window filtering
- File selection
- Manifest and archive creation
- Replication to local, S3 and SFTP destinations
- Job orchestration and lifecycle events
"""

from .job import (
    BackupJob,
    BackupOutcome,
    ConfigurationError,
    DatabaseConnection,
    DestinationNotConfigured,
    EmptyBackupError,
    NoDestinationsConfigured,
)
from .factory import BackupJobFactory, load_definition
from .selection import FileSelection
from .filters import DateFilterWindow, DumpFilterPolicy, SchemaInspector
from .dumpers import Dumper, DumpFailure, create_dumper
from .manifest import Manifest
from .compression import ArchiveWriter, ArchiveWriteFailure
from .storage import (
    BackupDestination,
    DestinationWriteFailure,
    LocalDestination,
    S3Destination,
    SFTPDestination,
    create_destination,
)
from .events import (
    ArchiveCreated,
    CallbackEventSink,
    CompositeEventSink,
    DestinationWriteSucceeded,
    JobFailed,
    LoggingEventSink,
    ManifestCreated,
)

__all__ = [
    'BackupJob',
    'BackupOutcome',
    'ConfigurationError',
    'DatabaseConnection',
    'DestinationNotConfigured',
    'EmptyBackupError',
    'NoDestinationsConfigured',
    'BackupJobFactory',
    'load_definition',
    'FileSelection',
    'DateFilterWindow',
    'DumpFilterPolicy',
    'SchemaInspector',
    'Dumper',
    'DumpFailure',
    'create_dumper',
    'Manifest',
    'ArchiveWriter',
    'ArchiveWriteFailure',
    'BackupDestination',
    'DestinationWriteFailure',
    'LocalDestination',
    'S3Destination',
    'SFTPDestination',
    'create_destination',
    'ArchiveCreated',
    'CallbackEventSink',
    'CompositeEventSink',
    'DestinationWriteSucceeded',
    'JobFailed',
    'LoggingEventSink',
    'ManifestCreated',
]
