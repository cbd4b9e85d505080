from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from ..model import ExecResult


@dataclass
class ExecOptions:
    """
    Per-command options.

    `cancel` is the cancellation token: when it is set the sandbox must
    terminate the running command (not merely stop waiting for it).
    """
    working_dir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cancel: Optional[asyncio.Event] = None


class Sandbox(Protocol):
    """Isolated execution environment bound to a single job."""

    sandbox_id: str

    async def exec(self, command: str, options: Optional[ExecOptions] = None) -> ExecResult: ...

    async def read_file(self, path: str) -> bytes: ...

    async def write_file(self, path: str, content: bytes | str) -> None: ...
