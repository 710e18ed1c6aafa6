"""
NAS Controller core.

This package contains the components that own app lifecycle state: the
container and git wrappers, the port allocator, the single-flight build
pipeline, the lifecycle orchestrator and the startup reconciler.

The server builds one instance of each at startup and shares them; tests
construct isolated instances.
"""

from .app_manager import AppManager
from .build_pipeline import BuildPipeline, ProgressChannel
from .container_manager import ContainerInfo, ContainerManager
from .git_service import GitService
from .port_allocator import PortAllocator
from .reconciler import StateReconciler

__all__ = [
    "AppManager",
    "BuildPipeline",
    "ContainerInfo",
    "ContainerManager",
    "GitService",
    "PortAllocator",
    "ProgressChannel",
    "StateReconciler",
]
