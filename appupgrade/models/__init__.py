"""Data models for appupgrade."""
from appupgrade.models.container import (
    BindMount,
    Container,
    ContainerState,
    UpgradeMode,
)

__all__ = [
    'BindMount',
    'Container',
    'ContainerState',
    'UpgradeMode',
]
