"""Domain and request models for the deployment core.

Key Models:
    - Deployment: One worker run against one issue
    - Task / RepositoryLink: Records the core reads and caches status onto
    - IssueComment / WorkerComment: Raw and status-tagged tracker comments
    - PlanningSession / PlanThread / PlanRevision: Planning records
    - PlanStreamRequest / PlanStreamEvent / PlanStreamState: Generation I/O

Request models in ``taskrelay.models.requests`` validate every mutation's
input before side effects happen.
"""
