"""
Tests for backoffice_batch.services.procedures and artifacts.

ShellProcedureRunner is exercised against real ``sh`` scripts written to
a temporary directory.
"""

from pathlib import Path

import pytest

from backoffice_batch.domain.types import BackupOptions
from backoffice_batch.services.artifacts import ArtifactStore, slugify
from backoffice_batch.services.procedures import ShellProcedureRunner
from backoffice_kernel.exceptions import (
    BackupExistsError,
    MissingArtifactError,
    ProcedureFailedError,
    ProcedureNotConfiguredError,
)


BACKUP_SCRIPT = """\
set -e
echo "db=$INCLUDE_DATABASE storage=$INCLUDE_STORAGE config=$INCLUDE_CONFIG" > "$BACKUP_DIR/$1.manifest"
echo "done $1"
"""

RESTORE_SCRIPT = """\
echo "$BACKUP_PATH db=$RESTORE_DATABASE storage=$RESTORE_STORAGE config=$RESTORE_CONFIG name=$1"
"""


@pytest.fixture
def scripts(tmp_path) -> Path:
    path = tmp_path / "scripts"
    path.mkdir()
    (path / "backup.sh").write_text(BACKUP_SCRIPT)
    (path / "restore.sh").write_text(RESTORE_SCRIPT)
    return path


@pytest.fixture
def store(tmp_path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "backups")


# =============================================================================
# ShellProcedureRunner
# =============================================================================


class TestShellBackup:
    def test_runs_script_with_environment(self, scripts, store):
        runner = ShellProcedureRunner(scripts)
        target = store.prepare("nightly")

        result = runner.run_backup(
            target, BackupOptions(include_storage=False, include_config=True, name="nightly"),
        )

        assert result.exit_code == 0
        assert result.stdout == "done nightly\n"
        manifest = (target / "nightly.manifest").read_text()
        assert manifest.strip() == "db=true storage=false config=true"

    def test_missing_script(self, tmp_path, store):
        runner = ShellProcedureRunner(tmp_path / "nowhere")
        with pytest.raises(ProcedureNotConfiguredError) as exc_info:
            runner.run_backup(store.prepare("x"), BackupOptions(name="x"))
        assert exc_info.value.procedure == "backup"

    def test_non_zero_exit(self, scripts, store):
        (scripts / "backup.sh").write_text('echo "starting"\necho "disk full" >&2\nexit 3\n')
        runner = ShellProcedureRunner(scripts)

        with pytest.raises(ProcedureFailedError) as exc_info:
            runner.run_backup(store.prepare("x"), BackupOptions(name="x"))

        assert exc_info.value.exit_code == 3
        assert "disk full" in str(exc_info.value)

    def test_timeout(self, scripts, store):
        (scripts / "backup.sh").write_text("exec sleep 5\n")
        runner = ShellProcedureRunner(scripts, timeout_seconds=1)

        with pytest.raises(ProcedureFailedError) as exc_info:
            runner.run_backup(store.prepare("x"), BackupOptions(name="x"))

        assert exc_info.value.exit_code is None
        assert "timed out" in str(exc_info.value)

    def test_custom_script_name(self, scripts, store):
        (scripts / "dump.sh").write_text('echo custom\n')
        runner = ShellProcedureRunner(scripts, backup_script="dump.sh")
        assert runner.run_backup(store.prepare("x"), BackupOptions(name="x")).stdout == "custom\n"


class TestShellRestore:
    def test_runs_script_with_environment(self, scripts, store):
        runner = ShellProcedureRunner(scripts)
        artifact = store.prepare("nightly")

        result = runner.run_restore(
            artifact, BackupOptions(include_database=True, include_storage=False, name="nightly"),
        )

        assert result.stdout.strip() == (
            f"{artifact} db=true storage=false config=false name=nightly"
        )


# =============================================================================
# ArtifactStore
# =============================================================================


class TestArtifactStore:
    def test_prepare_creates_directory(self, store):
        path = store.prepare("backup_1")
        assert path.is_dir()
        assert path == store.root / "backup_1"

    def test_prepare_refuses_existing_directory(self, store):
        first = store.prepare("backup_1")
        (first / "db.sql.gz").write_bytes(b"x")
        with pytest.raises(BackupExistsError):
            store.prepare("backup_1")
        assert (first / "db.sql.gz").read_bytes() == b"x"

    @pytest.mark.parametrize("name", ["../etc", "a/b", "a\\b", "..", "", ".hidden", "x..y"])
    def test_rejects_unsafe_names(self, store, name):
        with pytest.raises(ValueError):
            store.validate_name(name)

    def test_measure_is_recursive(self, store):
        path = store.prepare("b")
        (path / "db.sql.gz").write_bytes(b"x" * 100)
        (path / "files").mkdir()
        (path / "files" / "storage.tar.gz").write_bytes(b"y" * 50)
        assert store.measure(path) == 150

    def test_measure_empty_directory(self, store):
        with pytest.raises(MissingArtifactError):
            store.measure(store.prepare("empty"))

    def test_measure_missing(self, store):
        with pytest.raises(MissingArtifactError):
            store.measure(store.root / "absent")

    def test_exists(self, store):
        path = store.prepare("b")
        assert not store.exists(path)
        (path / "a.tar.gz").write_bytes(b"z")
        assert store.exists(path)

    def test_remove(self, store):
        path = store.prepare("b")
        (path / "a.tar.gz").write_bytes(b"z")
        assert store.remove(path) is True
        assert not path.exists()
        assert store.remove(path) is False

    def test_discover_lists_non_empty_directories(self, store):
        full = store.prepare("full")
        (full / "a.tar.gz").write_bytes(b"z")
        store.prepare("empty")
        assert store.discover() == (full,)

    def test_slugify(self):
        assert slugify("Nightly DB + files") == "Nightly_DB_files"
        assert slugify("///") == "backup"
