"""
Typed Exception Hierarchy for the back-office engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BackOfficeError:

    BackOfficeError (base)
    |
    +-- ConfigurationError
    |   +-- InvalidScheduleError
    |   +-- ProcedureNotConfiguredError
    |
    +-- ScheduleError
    |   +-- ScheduleNotFoundError
    |
    +-- TransientItemError
    |
    +-- RecurrenceError
    |   +-- UnknownFrequencyError
    |
    +-- BackupError
        +-- BackupNotFoundError
        +-- BackupExistsError
        +-- BackupIntegrityError
        +-- ProcedureFailedError
        +-- MissingArtifactError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Configuration   | CONFIGURATION_ERROR         | Settings cannot be loaded or are invalid
                | INVALID_SCHEDULE            | Cron expression is malformed
                | PROCEDURE_NOT_CONFIGURED    | Backup/restore script is missing
----------------|-----------------------------|-----------------------------------------
Schedule        | SCHEDULE_NOT_FOUND          | Unknown schedule id
----------------|-----------------------------|-----------------------------------------
Batch item      | TRANSIENT_ITEM_FAILURE      | One item of a batch failed (retryable)
----------------|-----------------------------|-----------------------------------------
Recurrence      | UNKNOWN_FREQUENCY           | Template carries an unrecognized frequency
----------------|-----------------------------|-----------------------------------------
Backup          | BACKUP_NOT_FOUND            | Backup id doesn't exist
                | BACKUP_EXISTS               | Backup name or artifact already taken
                | BACKUP_INTEGRITY            | Restore of a non-completed/missing backup
                | PROCEDURE_FAILED            | External procedure exited non-zero
                | MISSING_ARTIFACT            | Procedure succeeded, artifact absent

===============================================================================
HANDLING PATTERNS
===============================================================================

Batch entrypoints never raise for per-item failures.  They catch
``TransientItemError`` and ``UnknownFrequencyError`` per item, log them,
and continue.  Failures of shared setup (the due-item selection) and
``ConfigurationError`` propagate to the caller:

    try:
        engine.trigger_recurring_expenses()
    except ConfigurationError as e:
        alert_operator(e.code)
"""


class BackOfficeError(Exception):
    """
    Base exception for all back-office engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BACKOFFICE_ERROR"


# Configuration exceptions


class ConfigurationError(BackOfficeError):
    """Engine configuration is invalid or incomplete. Never retried."""

    code: str = "CONFIGURATION_ERROR"


class InvalidScheduleError(ConfigurationError):
    """Cron expression of a schedule could not be parsed."""

    code: str = "INVALID_SCHEDULE"

    def __init__(self, cron_expression: str, reason: str, schedule_id: str | None = None):
        self.cron_expression = cron_expression
        self.reason = reason
        self.schedule_id = schedule_id
        super().__init__(f"Invalid cron expression '{cron_expression}': {reason}")


class ProcedureNotConfiguredError(ConfigurationError):
    """An external backup/restore procedure is missing on disk."""

    code: str = "PROCEDURE_NOT_CONFIGURED"

    def __init__(self, procedure: str, script_path: str):
        self.procedure = procedure
        self.script_path = script_path
        super().__init__(f"{procedure} script not found: {script_path}")


# Schedule exceptions


class ScheduleError(BackOfficeError):
    """Base exception for schedule lifecycle errors."""

    code: str = "SCHEDULE_ERROR"


class ScheduleNotFoundError(ScheduleError):
    """No schedule is known under the given id."""

    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


# Batch item exceptions


class TransientItemError(BackOfficeError):
    """
    A single item of a batch run failed.

    Caught by the batch loop; the item is left untouched so the next run
    retries it.
    """

    code: str = "TRANSIENT_ITEM_FAILURE"

    def __init__(self, item_key: str, reason: str):
        self.item_key = item_key
        self.reason = reason
        super().__init__(f"Item {item_key} failed: {reason}")


# Recurrence exceptions


class RecurrenceError(BackOfficeError):
    """Base exception for recurring expense errors."""

    code: str = "RECURRENCE_ERROR"


class UnknownFrequencyError(RecurrenceError):
    """Template carries a recurrence frequency the engine does not know."""

    code: str = "UNKNOWN_FREQUENCY"

    def __init__(self, frequency: object, template_id: str | None = None):
        self.frequency = frequency
        self.template_id = template_id
        super().__init__(f"Unknown recurrence frequency: {frequency!r}")


# Backup exceptions


class BackupError(BackOfficeError):
    """Base exception for backup lifecycle errors."""

    code: str = "BACKUP_ERROR"


class BackupNotFoundError(BackupError):
    """Backup record with the given id doesn't exist."""

    code: str = "BACKUP_NOT_FOUND"

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class BackupExistsError(BackupError):
    """A backup with this name or artifact directory already exists."""

    code: str = "BACKUP_EXISTS"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Backup already exists: {name}")


class BackupIntegrityError(BackupError):
    """
    Restore requested from a backup that cannot be trusted.

    Raised before any destructive action when the record is not COMPLETED
    or its artifact is missing on disk.
    """

    code: str = "BACKUP_INTEGRITY"

    def __init__(self, backup_id: str, reason: str):
        self.backup_id = backup_id
        self.reason = reason
        super().__init__(f"Cannot restore backup {backup_id}: {reason}")


class ProcedureFailedError(BackupError):
    """External procedure exited non-zero or timed out."""

    code: str = "PROCEDURE_FAILED"

    def __init__(self, procedure: str, exit_code: int | None, stderr: str = ""):
        self.procedure = procedure
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        if exit_code is None:
            message = f"{procedure} procedure timed out: {detail}"
        else:
            message = f"{procedure} procedure exited with status {exit_code}: {detail}"
        super().__init__(message)


class MissingArtifactError(BackupError):
    """Procedure reported success but produced no artifact on disk."""

    code: str = "MISSING_ARTIFACT"

    def __init__(self, artifact_path: str):
        self.artifact_path = artifact_path
        super().__init__(f"Backup artifact missing or empty: {artifact_path}")
