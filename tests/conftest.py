"""
Shared pytest fixtures for backupkit tests.

This module provides fixtures for:
- Test configuration pointing at per-test temporary directories
- Fake dumpers and destinations standing in for dump tools and remote storage
- An event sink recording every notification
- A SQLite database with log tables and a view
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import create_engine, text

from backupkit.config import TestingConfig
from backupkit.utils.crypto import CryptoManager
from backupkit.backup.dumpers import Dumper, DumpFailure
from backupkit.backup.events import CallbackEventSink
from backupkit.backup.storage import BackupDestination, DestinationWriteFailure


class FakeDumper(Dumper):
    """Dumper writing fixed content instead of spawning a dump tool."""

    engine = 'mysql'
    supports_date_window = True
    supports_sanitizing = True

    def __init__(self, db_name='app', content=b'-- dump\nINSERT INTO t VALUES (1);\n', fail=False, **kwargs):
        super().__init__(db_name, **kwargs)
        self.content = content
        self.fail = fail
        self.dumped_paths = []

    def dump_to_file(self, path):
        if self.fail:
            raise DumpFailure(f"mysqldump exited with 2: access denied for {self.db_name}")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(self.content)
        self.dumped_paths.append(path)
        return path


class RecordingDestination(BackupDestination):
    """Destination keeping copies of what it was asked to write."""

    def __init__(self, disk_name, fail=False, backup_name='app', log_archive=False):
        super().__init__(disk_name, backup_name, log_archive)
        self.fail = fail
        self.written = []

    def write(self, local_path):
        if self.fail:
            raise DestinationWriteFailure(f"Disk {self.disk_name} is unreachable")
        with open(local_path, 'rb') as f:
            self.written.append((self.storage_path(local_path), f.read()))
        return self.storage_path(local_path)


@pytest.fixture
def test_config(tmp_path):
    """TestingConfig with temp and log directories under tmp_path."""
    return type('TestConfig', (TestingConfig,), {
        'TEMP_DIR': str(tmp_path / 'backup-temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'FILENAME_PREFIX': '',
        'ARCHIVE_FORMAT': 'zip',
        'DATABASE_DUMP_COMPRESSOR': None,
        'MASTER_PASSWORD': None,
        'MASTER_SALT': None,
    })


@pytest.fixture
def workspace_path(test_config):
    return os.path.join(test_config.TEMP_DIR, 'temp')


@pytest.fixture
def fake_dumper():
    """Factory for FakeDumper instances."""
    return FakeDumper


@pytest.fixture
def recording_destination():
    """Factory for RecordingDestination instances."""
    return RecordingDestination


@pytest.fixture
def events():
    """List collecting every emitted event, plus the sink feeding it."""
    received = []
    return received, CallbackEventSink(received.append)


@pytest.fixture
def crypto_manager_initialized():
    """
    Create and initialize a CryptoManager instance.

    Password: test_password_123
    """
    cm = CryptoManager()
    salt = cm.initialize('test_password_123')
    return cm, salt


@pytest.fixture
def sqlite_db(tmp_path):
    """
    SQLite database with two log tables, a regular table and a view.

    auth_log holds rows in January and February 2024; z_log holds January rows.

    Returns:
        (url, engine)
    """
    url = f"sqlite:///{tmp_path / 'app.sqlite'}"
    engine = create_engine(url)

    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)"))
        conn.execute(text("CREATE TABLE auth_log (id INTEGER PRIMARY KEY, created_at TEXT)"))
        conn.execute(text("CREATE TABLE z_log (id INTEGER PRIMARY KEY, created_at TEXT)"))
        conn.execute(text("CREATE VIEW active_users AS SELECT id, name FROM users"))
        conn.execute(text(
            "INSERT INTO auth_log (created_at) VALUES "
            "('2024-01-01 08:00:00'), ('2024-01-31 23:59:59'), ('2024-02-01 00:00:00')"
        ))
        conn.execute(text(
            "INSERT INTO z_log (created_at) VALUES ('2024-01-15 12:00:00'), ('2023-12-31 23:00:00')"
        ))

    yield url, engine
    engine.dispose()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('backupkit.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/test_file.pyc (should be excluded in tests)
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (data / 'test_file.pyc').write_bytes(b'compiled python')

    return data
