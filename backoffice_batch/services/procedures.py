"""
External backup/restore procedures.

The engine does not know how to dump a database or archive uploaded files;
it runs operator-provided shell scripts and judges them by exit status.

Backup script environment:
    BACKUP_DIR        -- directory the script must write its archives into
    INCLUDE_DATABASE  -- "true"/"false"
    INCLUDE_STORAGE   -- "true"/"false"
    INCLUDE_CONFIG    -- "true"/"false"
    $1                -- backup name

Restore script environment:
    BACKUP_PATH       -- artifact directory of the backup to restore
    RESTORE_DATABASE / RESTORE_STORAGE / RESTORE_CONFIG -- "true"/"false"
    $1                -- backup name
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from backoffice_kernel.exceptions import ProcedureFailedError, ProcedureNotConfiguredError
from backoffice_kernel.logging_config import get_logger

from backoffice_batch.domain.types import BackupOptions

logger = get_logger("batch.procedures")

_OUTPUT_TAIL_CHARS = 2000


@dataclass(frozen=True)
class ProcedureResult:
    """Captured outcome of one successful procedure run."""

    procedure: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def stdout_tail(self) -> str:
        return self.stdout[-_OUTPUT_TAIL_CHARS:]


class ProcedureRunner(Protocol):
    """Runs the external backup and restore procedures."""

    def run_backup(self, target_dir: Path, options: BackupOptions) -> ProcedureResult: ...

    def run_restore(self, artifact_path: Path, options: BackupOptions) -> ProcedureResult: ...


def _flag(value: bool) -> str:
    return "true" if value else "false"


class ShellProcedureRunner:
    """Runs ``backup.sh`` / ``restore.sh`` from ``scripts_path`` with ``sh``."""

    def __init__(
        self,
        scripts_path: Path | str,
        backup_script: str = "backup.sh",
        restore_script: str = "restore.sh",
        timeout_seconds: int = 3600,
        shell: str = "sh",
        base_env: Mapping[str, str] | None = None,
    ):
        self._scripts_path = Path(scripts_path)
        self._backup_script = backup_script
        self._restore_script = restore_script
        self._timeout = timeout_seconds
        self._shell = shell
        self._base_env = base_env

    def run_backup(self, target_dir: Path, options: BackupOptions) -> ProcedureResult:
        env = {
            "BACKUP_DIR": str(target_dir),
            "INCLUDE_DATABASE": _flag(options.include_database),
            "INCLUDE_STORAGE": _flag(options.include_storage),
            "INCLUDE_CONFIG": _flag(options.include_config),
        }
        return self._execute("backup", self._backup_script, env, options.name or target_dir.name)

    def run_restore(self, artifact_path: Path, options: BackupOptions) -> ProcedureResult:
        env = {
            "BACKUP_PATH": str(artifact_path),
            "RESTORE_DATABASE": _flag(options.include_database),
            "RESTORE_STORAGE": _flag(options.include_storage),
            "RESTORE_CONFIG": _flag(options.include_config),
        }
        return self._execute("restore", self._restore_script, env, options.name or artifact_path.name)

    def _execute(
        self,
        procedure: str,
        script: str,
        env: dict[str, str],
        name: str,
    ) -> ProcedureResult:
        script_path = self._scripts_path / script
        if not script_path.is_file():
            raise ProcedureNotConfiguredError(procedure, str(script_path))

        full_env = dict(os.environ if self._base_env is None else self._base_env)
        full_env.update(env)

        logger.info(
            "procedure_started",
            extra={"procedure": procedure, "script": script_path, "backup_name": name},
        )
        start = time.monotonic()
        try:
            result = subprocess.run(
                [self._shell, str(script_path), name],
                env=full_env,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode(errors="replace")
            raise ProcedureFailedError(procedure, None, stderr or "") from exc
        except FileNotFoundError as exc:
            raise ProcedureNotConfiguredError(procedure, self._shell) from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        if result.stderr:
            logger.warning(
                "procedure_stderr",
                extra={"procedure": procedure, "stderr": result.stderr[-_OUTPUT_TAIL_CHARS:]},
            )
        if result.returncode != 0:
            raise ProcedureFailedError(procedure, result.returncode, result.stderr or "")

        logger.info(
            "procedure_completed",
            extra={"procedure": procedure, "duration_ms": duration_ms},
        )
        return ProcedureResult(
            procedure=procedure,
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            duration_ms=duration_ms,
        )
