"""
Unit tests for the backup job (backupkit/backup/job.py).

Runs complete jobs with fake dumpers and recording destinations; no dump
tools or remote storage are needed.
"""

import io
import os
import zipfile

import pytest
from freezegun import freeze_time
from sqlalchemy import text

from backupkit.backup.dumpers import DumpFailure, MySqlDumper
from backupkit.backup.events import (
    ArchiveCreated,
    DestinationWriteSucceeded,
    JobFailed,
    ManifestCreated,
)
from backupkit.backup.filters import DumpFilterPolicy
from backupkit.backup.job import (
    BackupJob,
    BackupOutcome,
    ConfigurationError,
    DatabaseConnection,
    DestinationNotConfigured,
    EmptyBackupError,
    NoDestinationsConfigured,
)
from backupkit.backup.selection import FileSelection
from backupkit.backup.storage import LocalDestination


class CommandRecordingDumper(MySqlDumper):
    """MySqlDumper writing its mysqldump command line instead of running it."""

    def __init__(self, db_name='app', **kwargs):
        super().__init__(db_name, **kwargs)
        self.commands = []

    def dump_to_file(self, path):
        command = self.get_dump_command()
        self.commands.append(command)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            f.write(' '.join(command))
        return path


def archive_names(data):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return sorted(zf.namelist())


def failures(received):
    return [event for event in received if isinstance(event, JobFailed)]


@pytest.fixture
def make_job(test_config, events, fake_dumper, temp_files):
    """Build a job with one database, the temp_files tree and the given destinations."""
    _, sink = events

    def _make(destinations, dumper=None, files=True, policy=None):
        job = BackupJob(test_config, event_sink=sink, filter_policy=policy)
        job.set_db_connections({'app': dumper or fake_dumper()})
        if files:
            job.set_file_selection(FileSelection([temp_files], exclude_patterns=['*.pyc']))
        return job.set_backup_destinations(destinations)

    return _make


class TestBackupJobRun:
    """Test complete runs."""

    def test_successful_run(self, make_job, recording_destination, events, workspace_path, temp_files):
        received, _ = events
        first, second = recording_destination('first'), recording_destination('second')
        job = make_job([first, second]).set_filename('nightly.zip')

        outcome = job.run()

        assert outcome == BackupOutcome.success('nightly.zip')
        assert outcome.succeeded
        for destination in (first, second):
            assert len(destination.written) == 1
            location, data = destination.written[0]
            assert location == 'app/nightly.zip'
            names = archive_names(data)
            assert 'db-dumps/mysql-app-app.sql' in names
            assert str(temp_files / 'test_file1.txt').lstrip('/') in names
            assert len(names) == 4

        assert not os.path.exists(workspace_path)
        assert [type(e) for e in received[:2]] == [ManifestCreated, ArchiveCreated]
        assert sorted(e.disk_name for e in received if isinstance(e, DestinationWriteSucceeded)) == [
            'first', 'second'
        ]
        assert not failures(received)

    def test_manifest_lists_dumps_first(self, make_job, recording_destination, events):
        received, _ = events

        make_job([recording_destination('local')]).run()

        manifest = next(e for e in received if isinstance(e, ManifestCreated))
        assert manifest.entry_count == 4
        assert manifest.paths[0].endswith(os.path.join('db-dumps', 'mysql-app-app.sql'))

    def test_overlapping_includes_listed_once(self, make_job, recording_destination, events, temp_files):
        received, _ = events
        destination = recording_destination('local')
        job = make_job([destination])
        job.set_file_selection(FileSelection([temp_files, temp_files / 'test_file1.txt', str(temp_files) + '/']))

        job.run()

        manifest = next(e for e in received if isinstance(e, ManifestCreated))
        assert len(manifest.paths) == len(set(manifest.paths)) == 5
        assert len(archive_names(destination.written[0][1])) == 5

    def test_file_name_with_newline_is_archived(self, make_job, recording_destination, temp_files):
        odd = temp_files / 'line\nbreak.txt'
        odd.write_text('still backed up')
        destination = recording_destination('local')

        make_job([destination]).run()

        names = archive_names(destination.written[0][1])
        assert str(odd).lstrip('/') in names
        assert len(names) == 5

    def test_one_failed_destination_is_isolated(self, make_job, recording_destination, events):
        """Destination 2 of 3 failing leaves 1 and 3 written and reports exactly one failure."""
        received, _ = events
        d1 = recording_destination('d1')
        d2 = recording_destination('d2', fail=True)
        d3 = recording_destination('d3')

        outcome = make_job([d1, d2, d3]).run()

        assert outcome.status == BackupOutcome.PARTIAL_FAILURE
        assert list(outcome.destination_errors) == ['d2']
        assert 'unreachable' in outcome.destination_errors['d2']
        assert len(d1.written) == 1
        assert len(d3.written) == 1
        assert d2.written == []

        failed = failures(received)
        assert len(failed) == 1
        assert failed[0].disk_name == 'd2'
        assert failed[0].stage == 'replicate'

    def test_no_destinations_has_no_side_effects(self, make_job, fake_dumper, events, workspace_path):
        received, _ = events
        dumper = fake_dumper()

        with pytest.raises(NoDestinationsConfigured):
            make_job([], dumper=dumper).run()

        assert dumper.dumped_paths == []
        assert not os.path.exists(workspace_path)
        assert len(failures(received)) == 1
        assert failures(received)[0].stage == 'validate'

    def test_dump_failure_is_fatal(self, make_job, fake_dumper, recording_destination, events, workspace_path):
        received, _ = events
        destination = recording_destination('local')

        with pytest.raises(DumpFailure, match='access denied'):
            make_job([destination], dumper=fake_dumper(fail=True)).run()

        assert destination.written == []
        assert not os.path.exists(workspace_path)
        assert [f.stage for f in failures(received)] == ['dump']

    def test_empty_backup(self, test_config, recording_destination):
        job = BackupJob(test_config).set_backup_destinations([recording_destination('local')])

        with pytest.raises(EmptyBackupError, match='no files to be backed up'):
            job.run()

    def test_all_destinations_failing_is_partial_failure(self, make_job, recording_destination):
        outcome = make_job([recording_destination('a', fail=True), recording_destination('b', fail=True)]).run()

        assert outcome.status == BackupOutcome.PARTIAL_FAILURE
        assert set(outcome.destination_errors) == {'a', 'b'}

    def test_run_is_not_reentrant(self, make_job, recording_destination):
        job = make_job([recording_destination('local')])
        job._run_lock.acquire()

        try:
            with pytest.raises(ConfigurationError, match='already running'):
                job.run()
        finally:
            job._run_lock.release()

    def test_disabled_notifications(self, make_job, recording_destination, events):
        received, _ = events

        make_job([recording_destination('local'), recording_destination('bad', fail=True)]) \
            .disable_notifications() \
            .run()

        assert received == []

    def test_raising_sink_does_not_fail_backup(self, test_config, fake_dumper, recording_destination):
        class BrokenSink:
            def handle(self, event):
                raise RuntimeError('webhook down')

        destination = recording_destination('local')
        job = BackupJob(test_config, event_sink=BrokenSink())
        job.set_db_connections({'app': fake_dumper()}).set_backup_destinations([destination])

        assert job.run().status == BackupOutcome.SUCCESS
        assert len(destination.written) == 1

    def test_run_log_is_timestamped(self, make_job, recording_destination):
        job = make_job([recording_destination('local')])

        job.run()

        assert job.logs
        assert all(line.startswith('[') and ' UTC] ' in line for line in job.logs)

    def test_archive_prefix(self, test_config, fake_dumper, recording_destination):
        test_config.FILENAME_PREFIX = 'acme-'
        destination = recording_destination('local')
        job = BackupJob(test_config).set_filename('nightly.zip')
        job.set_db_connections({'app': fake_dumper()}).set_backup_destinations([destination])

        outcome = job.run()

        assert outcome.archive_path == 'acme-nightly.zip'
        assert destination.written[0][0] == 'app/acme-nightly.zip'


class TestBackupJobConfiguration:
    """Test setters and restrictions."""

    @freeze_time('2024-01-15 02:00:00')
    def test_default_filename(self, test_config):
        assert BackupJob(test_config).filename == '2024-01-15-02-00-00.zip'

    def test_sanitized_filenames(self, make_job, recording_destination):
        destination = recording_destination('local')
        job = make_job([destination]).set_filename('nightly.zip').set_sanitized()

        assert job.filename == 'nightly.sanitized.zip'

        outcome = job.run()

        assert outcome.archive_path == 'nightly.sanitized.zip'
        assert 'db-dumps/mysql-app-app.sanitized.sql' in archive_names(destination.written[0][1])

    def test_plain_run_names_have_no_marker(self, make_job, recording_destination):
        destination = recording_destination('local')

        outcome = make_job([destination]).run()

        assert 'sanitized' not in outcome.archive_path
        assert not any('sanitized' in name for name in archive_names(destination.written[0][1]))

    def test_sanitized_dump_uses_configured_tool(self, make_job, fake_dumper, recording_destination, test_config):
        dumper = fake_dumper()

        make_job([recording_destination('local')], dumper=dumper).set_sanitized().run()

        assert dumper.sanitized
        assert dumper.sanitize_binary_path == test_config.SANITIZE_BINARY_PATH
        assert dumper.replacements_file == test_config.SANITIZE_REPLACEMENTS_FILE

    def test_only_backup_to_returns_restricted_copy(self, make_job, recording_destination):
        d1, d2, d3 = (recording_destination(name) for name in ('d1', 'd2', 'd3'))
        job = make_job([d1, d2, d3])

        restricted = job.only_backup_to('d3')
        restricted.run()

        assert restricted is not job
        assert len(job.backup_destinations) == 3
        assert d1.written == [] and d2.written == []
        assert len(d3.written) == 1

    def test_restricted_run_settings_do_not_leak_into_original(self, make_job, recording_destination):
        """A windowed, sanitized run of a copy leaves the next plain run of the original unfiltered."""
        dumper = CommandRecordingDumper()
        destination = recording_destination('local')
        job = make_job([destination], dumper=dumper).set_filename('nightly.zip')

        job.only_backup_to('local').set_sanitized().set_filter_week('2024-03-14').run()
        outcome = job.run()

        weekly, plain = dumper.commands
        assert any(part.startswith('--where=') for part in weekly)
        assert any(part.startswith('--gdpr-replacements-file=') for part in weekly)
        assert not any(part.startswith('--where=') for part in plain)
        assert not any(part.startswith('--gdpr-replacements-file=') for part in plain)
        assert plain[0] == 'mysqldump'
        assert outcome.archive_path == 'nightly.zip'
        assert 'db-dumps/mysql-app-app.sql' in archive_names(destination.written[1][1])
        assert job.date_window.active is False
        assert job.sanitized is False

    def test_restricted_copy_has_its_own_file_selection(self, make_job, recording_destination, temp_files):
        job = make_job([recording_destination('local')])

        restricted = job.only_backup_to('local')
        restricted.file_selection.exclude_files_from(temp_files / 'nested')
        restricted.file_selection.exclude_pattern('*.log')

        assert restricted.file_selection is not job.file_selection
        assert job.file_selection.exclude_paths == []
        assert job.file_selection.exclude_patterns == ['*.pyc']
        assert str(temp_files / 'nested' / 'test_file3.txt') in job.files_to_be_backed_up()

    def test_only_backup_to_unknown_disk(self, make_job, recording_destination):
        with pytest.raises(DestinationNotConfigured, match='`offsite`'):
            make_job([recording_destination('local')]).only_backup_to('offsite')

    def test_only_db_name(self, test_config, fake_dumper):
        job = BackupJob(test_config).set_db_connections([
            DatabaseConnection('mysql', fake_dumper('app')),
            DatabaseConnection('reporting', fake_dumper('reports')),
        ])

        restricted = job.only_db_name(['reporting'])

        assert list(restricted.db_connections) == ['reporting']
        assert list(job.db_connections) == ['mysql', 'reporting']

    def test_dont_backup_filesystem_and_databases(self, make_job, recording_destination):
        job = make_job([recording_destination('local')])

        job.dont_backup_filesystem().dont_backup_databases()

        assert job.db_connections == {}
        assert job.file_selection.include_paths == []

    def test_second_date_filter_rejected(self, test_config):
        job = BackupJob(test_config).set_filter_week('2024-03-14')

        with pytest.raises(ConfigurationError, match='already set'):
            job.set_filter_month('2024-03-01')

    def test_invalid_filter_day(self, test_config):
        with pytest.raises(ConfigurationError, match='Invalid date'):
            BackupJob(test_config).set_filter_week('yesterday')

    def test_backup_never_selects_its_own_directories(self, test_config, temp_files):
        backups = temp_files / 'backups'
        backups.mkdir()
        (backups / 'old.zip').write_bytes(b'zip')
        job = BackupJob(test_config)
        job.set_file_selection(FileSelection.create([temp_files]))
        job.set_backup_destinations([LocalDestination('local', str(backups))])

        files = job.files_to_be_backed_up()

        assert str(backups / 'old.zip') not in files
        assert len(files) == 4
        # The configured selection itself is not modified
        assert job.file_selection.exclude_paths == []


class TestDateFilteredRuns:
    """Test log-only dumps under a date window and log-row purging."""

    @pytest.fixture
    def log_job(self, test_config, events, fake_dumper, sqlite_db):
        url, _ = sqlite_db
        _, sink = events

        def _make(destinations, purge_log_rows=True, dumper=None):
            policy = DumpFilterPolicy(log_tables=['auth_log', 'z_log', 'union_logs'], purge_log_rows=purge_log_rows)
            job = BackupJob(test_config, event_sink=sink, filter_policy=policy)
            job.set_db_connections([DatabaseConnection('mysql_dump_only_logs', dumper or fake_dumper(), url)])
            return job.set_backup_destinations(destinations).set_filter_month('2024-01-01')

        return _make

    @staticmethod
    def count_rows(engine, table):
        with engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()

    def test_log_dump_is_filtered_and_data_only(self, log_job, fake_dumper, recording_destination):
        dumper = fake_dumper()
        destination = recording_destination('logs', backup_name='app', log_archive=True)

        log_job([destination], purge_log_rows=False, dumper=dumper).run()

        assert dumper.included_tables == ['auth_log', 'z_log']
        assert dumper.create_tables is False
        assert str(dumper.start_date) == '2024-01-01'
        assert str(dumper.end_date) == '2024-01-31'
        location, data = destination.written[0]
        assert location.startswith('app/monthly/')
        assert 'db-dumps/mysql-app-2024-01.sql' in archive_names(data)

    def test_rows_kept_without_opt_in(self, log_job, recording_destination, sqlite_db):
        _, engine = sqlite_db

        log_job([recording_destination('local')], purge_log_rows=False).run()

        assert self.count_rows(engine, 'auth_log') == 3
        assert self.count_rows(engine, 'z_log') == 2

    def test_rows_purged_when_opted_in(self, log_job, recording_destination, sqlite_db):
        _, engine = sqlite_db

        log_job([recording_destination('local')]).run()

        assert self.count_rows(engine, 'auth_log') == 1
        assert self.count_rows(engine, 'z_log') == 1

    def test_rows_kept_when_no_destination_succeeded(self, log_job, recording_destination, sqlite_db):
        _, engine = sqlite_db

        outcome = log_job([recording_destination('local', fail=True)]).run()

        assert outcome.status == BackupOutcome.PARTIAL_FAILURE
        assert self.count_rows(engine, 'auth_log') == 3

    def test_engine_without_date_window_dumps_everything(self, log_job, fake_dumper, recording_destination, sqlite_db):
        _, engine = sqlite_db
        dumper = fake_dumper()
        dumper.supports_date_window = False

        log_job([recording_destination('local')], dumper=dumper).run()

        assert dumper.start_date is None
        # Rows were not filtered out of the dump, so they must not be purged
        assert self.count_rows(engine, 'auth_log') == 3
