"""
backoffice_batch -- Cron-driven scheduling and batch engine for the
freelancer finance back office.

Runs recurring expense generation and database/file backups on cron
schedules, with a per-schedule overlap guard, manual "run now" triggers,
one transaction per item of work, and retention-based backup cleanup.

Architecture:
    backoffice_batch/ depends on backoffice_kernel/ (db, clock, logging,
    exceptions) and backoffice_config/.  Nothing in the kernel imports
    from backoffice_batch.  ``orchestrator.SchedulingEngine`` composes
    the services.
"""
