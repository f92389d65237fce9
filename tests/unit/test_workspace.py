"""
Unit tests for the temporary workspace (backupkit/backup/workspace.py).
"""

from backupkit.backup.workspace import TemporaryWorkspace


class TestTemporaryWorkspace:

    def test_create_empties_leftovers(self, tmp_path):
        leftover = tmp_path / 'temp' / 'db-dumps'
        leftover.mkdir(parents=True)
        (leftover / 'old.sql').write_text('stale')
        (tmp_path / 'temp' / 'manifest.txt').write_text('stale')

        workspace = TemporaryWorkspace(str(tmp_path)).create()

        assert workspace.exists()
        assert list((tmp_path / 'temp').iterdir()) == []

    def test_delete_is_idempotent(self, tmp_path):
        workspace = TemporaryWorkspace(str(tmp_path), 'run').create()

        workspace.delete()
        workspace.delete()

        assert not workspace.exists()

    def test_path(self, tmp_path):
        workspace = TemporaryWorkspace(str(tmp_path))

        assert workspace.path('db-dumps', 'a.sql') == str(tmp_path / 'temp' / 'db-dumps' / 'a.sql')
