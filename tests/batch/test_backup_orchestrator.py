"""
Tests for backoffice_batch.services.backup -- BackupOrchestrator.

Procedures are replaced by an in-process fake that writes (or does not
write) an artifact, so the record lifecycle can be asserted without
shell scripts.
"""

import shutil
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import pytest

from backoffice_batch.domain.types import BackupKind, BackupOptions, BackupStatus
from backoffice_batch.services.artifacts import ArtifactStore
from backoffice_batch.services.backup import SYSTEM_INITIATOR, BackupOrchestrator
from backoffice_batch.services.dispatcher import JobContext, ScheduleDefinition
from backoffice_batch.services.procedures import ProcedureResult, ShellProcedureRunner
from backoffice_kernel.exceptions import (
    BackupExistsError,
    BackupIntegrityError,
    BackupNotFoundError,
    MissingArtifactError,
    ProcedureFailedError,
    ProcedureNotConfiguredError,
)
from backoffice_kernel.domain.clock import SequentialClock


# =============================================================================
# Test doubles
# =============================================================================


class FakeProcedures:
    """Records calls; writes a 128-byte archive unless told otherwise."""

    def __init__(self, fail_backup: bool = False, write_artifact: bool = True, fail_restore: bool = False):
        self.backups: list[tuple[Path, BackupOptions]] = []
        self.restores: list[tuple[Path, BackupOptions]] = []
        self.on_backup = None
        self._fail_backup = fail_backup
        self._write_artifact = write_artifact
        self._fail_restore = fail_restore

    def run_backup(self, target_dir, options):
        self.backups.append((target_dir, options))
        if self.on_backup is not None:
            self.on_backup(target_dir, options)
        if self._fail_backup:
            raise ProcedureFailedError("backup", 1, "pg_dump: connection refused\n")
        if self._write_artifact:
            (target_dir / "database.sql.gz").write_bytes(b"x" * 128)
        return ProcedureResult("backup", 0, "backup ok\n", "")

    def run_restore(self, artifact_path, options):
        self.restores.append((artifact_path, options))
        if self._fail_restore:
            raise ProcedureFailedError("restore", 2, "psql: relation exists\n")
        return ProcedureResult("restore", 0, "restore ok\n", "")


@pytest.fixture
def artifacts(tmp_path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "backups")


@pytest.fixture
def procedures() -> FakeProcedures:
    return FakeProcedures()


@pytest.fixture
def orchestrator(session_factory, procedures, artifacts, clock, actor_id):
    return BackupOrchestrator(
        session_factory, procedures, artifacts, clock=clock, actor_id=actor_id,
    )


def _scheduled_context(**config) -> JobContext:
    return JobContext(ScheduleDefinition(
        schedule_id="5e2b5f55-0000-4000-8000-000000000001",
        name="Nightly DB",
        cron_expression="0 3 * * *",
        job=lambda context: 0,
        config=config,
    ))


# =============================================================================
# create_backup
# =============================================================================


class TestCreateBackup:
    def test_successful_backup_is_completed(self, orchestrator, procedures, artifacts, clock):
        record = orchestrator.create_backup("alice", BackupOptions(name="before-upgrade"))

        assert record.status == BackupStatus.COMPLETED
        assert record.kind == BackupKind.MANUAL
        assert record.name == "before-upgrade"
        assert record.started_by == "alice"
        assert record.started_at == clock.now()
        assert record.size_bytes == 128
        assert record.artifact_path == str(artifacts.root / "before-upgrade")
        assert record.metadata["output"] == "backup ok\n"
        assert record.error_message is None
        assert procedures.backups[0][0] == artifacts.root / "before-upgrade"

    def test_default_name_from_clock(self, orchestrator, procedures):
        record = orchestrator.create_backup("alice")
        assert record.name == "backup_20240315T020000"
        assert procedures.backups[0][1].name == "backup_20240315T020000"

    def test_options_are_passed_to_procedure(self, orchestrator, procedures):
        record = orchestrator.create_backup(
            "alice",
            BackupOptions(include_database=True, include_storage=False, include_config=True),
        )
        options = procedures.backups[0][1]
        assert (options.include_database, options.include_storage, options.include_config) == (
            True, False, True,
        )
        assert (record.include_storage, record.include_config) == (False, True)

    def test_record_is_in_progress_while_procedure_runs(self, orchestrator, procedures):
        seen = []
        procedures.on_backup = lambda target, options: seen.extend(
            (r.name, r.status) for r in orchestrator.list_backups()
        )

        orchestrator.create_backup("alice", BackupOptions(name="visible"))

        assert seen == [("visible", BackupStatus.IN_PROGRESS)]

    def test_completed_at_taken_after_procedure(self, session_factory, procedures, artifacts):
        t0 = datetime(2024, 3, 15, 2, 0, 0)
        t1 = datetime(2024, 3, 15, 2, 4, 30)
        orchestrator = BackupOrchestrator(
            session_factory, procedures, artifacts, clock=SequentialClock([t0, t1]),
        )

        record = orchestrator.create_backup("alice", BackupOptions(name="timed"))

        assert record.started_at == t0
        assert record.completed_at == t1

    def test_failed_procedure_marks_record_failed(
        self, session_factory, artifacts, clock, captured_logs,
    ):
        orchestrator = BackupOrchestrator(
            session_factory, FakeProcedures(fail_backup=True), artifacts, clock=clock,
        )

        with pytest.raises(ProcedureFailedError):
            orchestrator.create_backup("alice", BackupOptions(name="broken"))

        (record,) = orchestrator.list_backups()
        assert record.status == BackupStatus.FAILED
        assert "connection refused" in record.error_message
        assert record.size_bytes is None
        assert record.completed_at == clock.now()
        assert any(r["message"] == "backup_failed" for r in captured_logs())

    def test_no_artifact_marks_record_failed(self, session_factory, artifacts, clock):
        orchestrator = BackupOrchestrator(
            session_factory, FakeProcedures(write_artifact=False), artifacts, clock=clock,
        )

        with pytest.raises(MissingArtifactError):
            orchestrator.create_backup("alice", BackupOptions(name="empty"))

        (record,) = orchestrator.list_backups()
        assert record.status == BackupStatus.FAILED
        assert "missing or empty" in record.error_message

    def test_unconfigured_procedure_marks_record_failed(
        self, tmp_path, session_factory, artifacts, clock,
    ):
        orchestrator = BackupOrchestrator(
            session_factory, ShellProcedureRunner(tmp_path / "no-scripts"), artifacts, clock=clock,
        )

        with pytest.raises(ProcedureNotConfiguredError):
            orchestrator.create_backup("alice", BackupOptions(name="unconfigured"))

        (record,) = orchestrator.list_backups()
        assert record.status == BackupStatus.FAILED

    def test_unsafe_name_rejected_before_recording(self, orchestrator, procedures):
        with pytest.raises(ValueError):
            orchestrator.create_backup("alice", BackupOptions(name="../etc"))

        assert orchestrator.list_backups() == ()
        assert procedures.backups == []

    def test_duplicate_name_refused_before_recording(self, orchestrator, procedures, artifacts):
        first = orchestrator.create_backup("alice", BackupOptions(name="nightly"))

        with pytest.raises(BackupExistsError):
            orchestrator.create_backup("bob", BackupOptions(name="nightly"))

        (record,) = orchestrator.list_backups()
        assert record.backup_id == first.backup_id
        assert len(procedures.backups) == 1
        assert artifacts.measure(first.artifact_path) == 128

    def test_name_of_leftover_directory_refused(self, orchestrator, procedures, artifacts):
        leftover = artifacts.root / "copied-in"
        leftover.mkdir(parents=True)
        (leftover / "database.sql.gz").write_bytes(b"y" * 64)

        with pytest.raises(BackupExistsError):
            orchestrator.create_backup("alice", BackupOptions(name="copied-in"))

        assert orchestrator.list_backups() == ()
        assert procedures.backups == []

    def test_default_names_in_same_second_get_own_directories(
        self, session_factory, artifacts, clock, orchestrator,
    ):
        first = orchestrator.create_backup("alice")
        empty_run = BackupOrchestrator(
            session_factory, FakeProcedures(write_artifact=False), artifacts, clock=clock,
        )

        with pytest.raises(MissingArtifactError):
            empty_run.create_backup("alice")

        records = {r.name: r for r in orchestrator.list_backups()}
        assert set(records) == {"backup_20240315T020000", "backup_20240315T020000_2"}
        second = records["backup_20240315T020000_2"]
        assert second.status == BackupStatus.FAILED
        assert second.artifact_path != first.artifact_path

        orchestrator.delete_backup(second.backup_id)
        assert artifacts.measure(first.artifact_path) == 128

    def test_scheduled_names_in_same_second_are_distinct(self, orchestrator):
        orchestrator.run_scheduled_backup(_scheduled_context())
        orchestrator.run_scheduled_backup(_scheduled_context())

        names = sorted(r.name for r in orchestrator.list_backups())
        assert names == [
            "scheduled_Nightly_DB_20240315T020000",
            "scheduled_Nightly_DB_20240315T020000_2",
        ]


# =============================================================================
# restore_backup
# =============================================================================


class TestRestoreBackup:
    def test_restores_completed_backup(self, orchestrator, procedures):
        record = orchestrator.create_backup(
            "alice", BackupOptions(include_storage=False, name="good"),
        )

        orchestrator.restore_backup(record.backup_id, "bob")

        ((path, options),) = procedures.restores
        assert path == Path(record.artifact_path)
        assert options.name == "good"
        assert options.include_storage is False

    def test_unknown_backup(self, orchestrator):
        with pytest.raises(BackupNotFoundError):
            orchestrator.restore_backup(uuid4(), "bob")

    def test_failed_backup_is_never_restored(self, session_factory, artifacts, clock):
        procedures = FakeProcedures(fail_backup=True)
        orchestrator = BackupOrchestrator(session_factory, procedures, artifacts, clock=clock)
        with pytest.raises(ProcedureFailedError):
            orchestrator.create_backup("alice", BackupOptions(name="broken"))
        (record,) = orchestrator.list_backups()

        with pytest.raises(BackupIntegrityError) as exc_info:
            orchestrator.restore_backup(record.backup_id, "bob")

        assert "status is failed" in str(exc_info.value)
        assert procedures.restores == []

    def test_missing_artifact_is_never_restored(self, orchestrator, procedures):
        record = orchestrator.create_backup("alice", BackupOptions(name="vanished"))
        shutil.rmtree(record.artifact_path)

        with pytest.raises(BackupIntegrityError) as exc_info:
            orchestrator.restore_backup(record.backup_id, "bob")

        assert exc_info.value.reason == "artifact missing on disk"
        assert procedures.restores == []

    def test_restore_procedure_failure_propagates(self, session_factory, artifacts, clock):
        orchestrator = BackupOrchestrator(
            session_factory, FakeProcedures(fail_restore=True), artifacts, clock=clock,
        )
        record = orchestrator.create_backup("alice", BackupOptions(name="good"))

        with pytest.raises(ProcedureFailedError):
            orchestrator.restore_backup(record.backup_id, "bob")

        assert orchestrator.get_backup(record.backup_id).status == BackupStatus.COMPLETED


# =============================================================================
# Queries, deletion, rescan
# =============================================================================


class TestQueries:
    def test_list_newest_first_with_paging(self, orchestrator, clock):
        for name in ("first", "second", "third"):
            orchestrator.create_backup("alice", BackupOptions(name=name))
            clock.advance(3600)

        assert [r.name for r in orchestrator.list_backups()] == ["third", "second", "first"]
        assert [r.name for r in orchestrator.list_backups(limit=1, offset=1)] == ["second"]

    def test_get_unknown_backup(self, orchestrator):
        with pytest.raises(BackupNotFoundError):
            orchestrator.get_backup(uuid4())

    def test_delete_removes_record_and_artifact(self, orchestrator):
        record = orchestrator.create_backup("alice", BackupOptions(name="doomed"))

        orchestrator.delete_backup(record.backup_id)

        assert not Path(record.artifact_path).exists()
        with pytest.raises(BackupNotFoundError):
            orchestrator.get_backup(record.backup_id)

    def test_rescan_registers_orphans_once(self, orchestrator, artifacts):
        orchestrator.create_backup("alice", BackupOptions(name="known"))
        orphan = artifacts.prepare("restored-from-offsite")
        (orphan / "database.sql.gz").write_bytes(b"y" * 64)

        assert orchestrator.rescan_artifacts() == 1
        assert orchestrator.rescan_artifacts() == 0

        records = {r.name: r for r in orchestrator.list_backups()}
        assert set(records) == {"known", "restored-from-offsite"}
        found = records["restored-from-offsite"]
        assert found.kind == BackupKind.AUTO
        assert found.status == BackupStatus.COMPLETED
        assert found.size_bytes == 64
        assert found.started_by == SYSTEM_INITIATOR


# =============================================================================
# run_scheduled_backup
# =============================================================================


class TestScheduledBackup:
    def test_creates_scheduled_backup(self, orchestrator, procedures):
        processed = orchestrator.run_scheduled_backup(
            _scheduled_context(include_storage=False, retention_days=0),
        )

        assert processed == 1
        (record,) = orchestrator.list_backups()
        assert record.kind == BackupKind.SCHEDULED
        assert record.started_by == SYSTEM_INITIATOR
        assert record.name == "scheduled_Nightly_DB_20240315T020000"
        assert record.include_storage is False

    def test_sweeps_retention_after_backup(self, orchestrator, clock):
        clock.set_time(datetime(2024, 3, 1, 2, 0, 0))
        orchestrator.create_backup("alice", BackupOptions(name="old"))
        clock.set_time(datetime(2024, 3, 15, 2, 0, 0))

        orchestrator.run_scheduled_backup(_scheduled_context(retention_days=7))

        names = [r.name for r in orchestrator.list_backups()]
        assert names == ["scheduled_Nightly_DB_20240315T020000"]

    def test_failure_propagates(self, session_factory, artifacts, clock):
        orchestrator = BackupOrchestrator(
            session_factory, FakeProcedures(fail_backup=True), artifacts, clock=clock,
        )
        with pytest.raises(ProcedureFailedError):
            orchestrator.run_scheduled_backup(_scheduled_context(retention_days=7))
        (record,) = orchestrator.list_backups()
        assert record.status == BackupStatus.FAILED
