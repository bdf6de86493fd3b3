"""Execution platforms and the mapping used to select one."""

from typing import Dict, Type

from rumflow.config.schema import PlatformName
from rumflow.platform.base import Platform
from rumflow.platform.cluster import ClusterPlatform, SubmissionResult
from rumflow.platform.local import LocalPlatform

PLATFORMS: Dict[PlatformName, Type[Platform]] = {
    PlatformName.LOCAL: LocalPlatform,
    PlatformName.CLUSTER: ClusterPlatform,
}

__all__ = [
    "PLATFORMS",
    "Platform",
    "LocalPlatform",
    "ClusterPlatform",
    "SubmissionResult",
]
