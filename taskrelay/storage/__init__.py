"""JSON-file persistence for deployments, tasks, planning records and the audit log."""
