"""External service clients.

Key Components:
    - IssueTracker: Abstract issue tracker contract
    - GitHubIssueTracker: PyGithub implementation
    - PlanStreamClient: httpx client for the plan generation stream
"""
