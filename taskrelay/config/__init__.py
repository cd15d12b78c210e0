"""Configuration for the deployment core.

Key Components:
    - RelaySettings: Root settings with YAML loading and ${ENV} interpolation
    - TrackerConfig: Issue tracker connection
    - WorkerConfig: Bot identity and comment marker contract
    - PollingConfig / PlanningConfig / StorageConfig / PortalConfig
"""

from taskrelay.config.settings import (
    OperatorConfig,
    PlanningConfig,
    PollingConfig,
    PortalConfig,
    RelaySettings,
    StorageConfig,
    TrackerConfig,
    WorkerConfig,
)

__all__ = [
    "OperatorConfig",
    "PlanningConfig",
    "PollingConfig",
    "PortalConfig",
    "RelaySettings",
    "StorageConfig",
    "TrackerConfig",
    "WorkerConfig",
]
