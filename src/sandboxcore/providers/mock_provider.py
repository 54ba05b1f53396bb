# src/sandboxcore/providers/mock_provider.py
"""
Mock backend for tests and local development.

The session carries identity only: command and file methods raise
``NotImplementedError`` so tests must stub the I/O they rely on.
"""

import logging
from typing import Mapping

from ..base import (
    CreateSandboxOptions,
    OutputCallback,
    SandboxProvider,
    SandboxProviderKind,
    SandboxSession,
)
from ..utils import random_id

logger = logging.getLogger(__name__)


class MockSession(SandboxSession):
    """Identity-only session bound to a sandbox id."""

    def __init__(self, sandbox_id: str):
        self._sandbox_id = sandbox_id

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    @property
    def sandbox_provider(self) -> SandboxProviderKind:
        return SandboxProviderKind.MOCK

    async def run_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> str:
        raise NotImplementedError("Not implemented: run_command")

    async def run_background_command(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        raise NotImplementedError("Not implemented: run_background_command")

    async def read_text_file(self, path: str) -> str:
        raise NotImplementedError("Not implemented: read_text_file")

    async def write_text_file(self, path: str, content: str) -> None:
        raise NotImplementedError("Not implemented: write_text_file")

    async def write_file(self, path: str, data: bytes) -> None:
        raise NotImplementedError("Not implemented: write_file")

    async def hibernate(self) -> None:
        logger.debug(f"[mock] hibernate {self._sandbox_id}")

    async def shutdown(self) -> None:
        logger.debug(f"[mock] shutdown {self._sandbox_id}")


class MockSandboxProvider(SandboxProvider):
    """Provider returning MockSession values; never talks to a backend."""

    kind = SandboxProviderKind.MOCK

    def __init__(self, session_factory=MockSession):
        self._session_factory = session_factory

    async def get_sandbox_or_none(self, sandbox_id: str) -> SandboxSession | None:
        return self._session_factory(sandbox_id)

    async def get_or_create_sandbox(
        self, sandbox_id: str | None, options: CreateSandboxOptions
    ) -> SandboxSession:
        return self._session_factory(sandbox_id or f"mock-{random_id(12)}")

    async def hibernate_by_id(self, sandbox_id: str) -> None:
        logger.debug(f"[mock] hibernate_by_id {sandbox_id}")

    async def extend_life(self, sandbox_id: str) -> None:
        logger.debug(f"[mock] extend_life {sandbox_id}")
