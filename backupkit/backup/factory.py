"""
Builds BackupJob instances from backup definitions.

A definition is a JSON document:

    {
        "name": "app",
        "files": {"include": ["/srv/app"], "exclude": ["/srv/app/cache"],
                  "exclude_patterns": ["*.pyc"], "follow_links": false},
        "databases": {
            "mysql": {"engine": "mysql", "db_name": "app", "username": "backup",
                      "password_encrypted": "...", "url": "mysql+pymysql://..."}
        },
        "log_tables": ["auth_log", "z_log"],
        "database_dump_compressor": "gzip",
        "destinations": [
            {"type": "local", "disk_name": "local", "root": "/backups"},
            {"type": "s3", "disk_name": "s3", "bucket_name": "backups",
             "access_key_encrypted": "...", "secret_key_encrypted": "..."}
        ]
    }

Any `<key>_encrypted` value is decrypted with the CryptoManager before use.
"""

import json
from typing import Any, Dict, Optional

from cryptography.fernet import InvalidToken

from backupkit.config import config as config_by_name
from backupkit.utils.crypto import CryptoManager
from .dumpers import create_dumper, get_compressor
from .filters import DEFAULT_LOG_TABLES, DumpFilterPolicy
from .job import BackupJob, ConfigurationError, DatabaseConnection
from .selection import FileSelection
from .storage import create_destination


def load_definition(path: str) -> Dict[str, Any]:
    """
    Read a backup definition file.

    Raises:
        ConfigurationError: If the file is missing or not valid JSON
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            definition = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Backup definition not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Backup definition {path} is not valid JSON: {e}")

    if not isinstance(definition, dict):
        raise ConfigurationError(f"Backup definition {path} must be a JSON object")
    return definition


class BackupJobFactory:
    """Creates configured BackupJob instances."""

    def __init__(self, config=None, crypto: Optional[CryptoManager] = None, event_sink=None):
        self.config = config or config_by_name['default']
        self.crypto = crypto or CryptoManager()
        self.event_sink = event_sink

    def create_from_file(self, path: str) -> BackupJob:
        return self.create_from_definition(load_definition(path))

    def create_from_definition(self, definition: Dict[str, Any]) -> BackupJob:
        """
        Build a job from a definition dict.

        Raises:
            ConfigurationError: If the definition is invalid or credentials
                cannot be decrypted
        """
        try:
            return self._build(definition)
        except ConfigurationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid backup definition: {e}")
        except (InvalidToken, RuntimeError) as e:
            raise ConfigurationError(f"Cannot decrypt credentials in backup definition: {e!r}")

    def _build(self, definition: Dict[str, Any]) -> BackupJob:
        backup_name = definition.get('name', '')

        filter_policy = DumpFilterPolicy.from_config(
            self.config,
            log_tables=definition.get('log_tables', DEFAULT_LOG_TABLES)
        )

        job = BackupJob(self.config, event_sink=self.event_sink, filter_policy=filter_policy)
        job.compressor = self._compressor(definition)

        job.set_file_selection(self._file_selection(definition.get('files') or {}))

        job.set_db_connections([
            self._connection(name, settings)
            for name, settings in (definition.get('databases') or {}).items()
        ])

        job.set_backup_destinations([
            self._destination(settings, backup_name)
            for settings in definition.get('destinations') or []
        ])

        return job

    def _compressor(self, definition: Dict[str, Any]) -> Optional[str]:
        compressor = definition.get('database_dump_compressor', self.config.DATABASE_DUMP_COMPRESSOR)

        if definition.get('gzip_database_dump'):
            if compressor not in (None, 'gzip'):
                raise ConfigurationError(
                    f"Only one compressor may be active (gzip_database_dump and {compressor})"
                )
            compressor = 'gzip'

        if compressor:
            get_compressor(compressor)
        return compressor or None

    def _file_selection(self, settings: Dict[str, Any]) -> FileSelection:
        selection = FileSelection(
            settings.get('include', []),
            settings.get('exclude_patterns', []),
            follow_links=bool(settings.get('follow_links', False)),
            exclude_dot_files=bool(settings.get('exclude_dot_files', False))
        )
        return selection.exclude_files_from(settings.get('exclude', []))

    def _connection(self, name: str, settings: Dict[str, Any]) -> DatabaseConnection:
        settings = self.crypto.decrypt_settings(settings)
        engine = settings.pop('engine')
        url = settings.pop('url', None)
        return DatabaseConnection(name, create_dumper(engine, **settings), url)

    def _destination(self, settings: Dict[str, Any], backup_name: str):
        settings = self.crypto.decrypt_settings(settings)
        kind = settings.pop('type')
        settings.setdefault('backup_name', backup_name)
        return create_destination(kind, **settings)
