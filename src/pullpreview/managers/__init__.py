"""Managers for preview builds and their host resources."""

from pullpreview.managers.build_executor import BuildExecutor, BuildLog
from pullpreview.managers.container_runtime import ContainerRuntime
from pullpreview.managers.lifecycle import PreviewOrchestrator, pull_request_ref
from pullpreview.managers.naming import derive_container_name
from pullpreview.managers.port_allocator import PortAllocator
from pullpreview.managers.process_runner import ProcessRunner
from pullpreview.managers.source_provider import GitSourceProvider

__all__ = [
    "BuildExecutor",
    "BuildLog",
    "ContainerRuntime",
    "GitSourceProvider",
    "PortAllocator",
    "PreviewOrchestrator",
    "ProcessRunner",
    "derive_container_name",
    "pull_request_ref",
]
