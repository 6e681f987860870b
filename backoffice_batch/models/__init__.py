"""
backoffice_batch.models -- ORM models for batch engine persistence.

Architecture: backoffice_batch/models. Imports from backoffice_kernel.db.base only.
"""

from backoffice_batch.models.backup import BackupRecordModel, BackupScheduleModel
from backoffice_batch.models.expense import ExpenseModel

__all__ = [
    "BackupRecordModel",
    "BackupScheduleModel",
    "ExpenseModel",
]
