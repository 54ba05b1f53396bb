# src/sandboxcore/providers/__init__.py
"""
Provider adapters, one per backend kind.

    - DockerSandboxProvider: local or remote Docker containers (``container``)
    - E2BSandboxProvider: E2B micro-VMs (``microvm``)
    - DaytonaSandboxProvider: Daytona workspaces (``workspace``)
    - MockSandboxProvider: identity-only sessions for tests (``mock``)

SDKs are imported lazily, so importing this package needs none of them.
"""

from .daytona_provider import DaytonaSandboxProvider, DaytonaSession
from .docker_provider import DockerSandboxProvider, DockerSession
from .e2b_provider import E2BSandboxProvider, E2BSession
from .mock_provider import MockSandboxProvider, MockSession

__all__ = [
    "DaytonaSandboxProvider",
    "DaytonaSession",
    "DockerSandboxProvider",
    "DockerSession",
    "E2BSandboxProvider",
    "E2BSession",
    "MockSandboxProvider",
    "MockSession",
]
