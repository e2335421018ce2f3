from __future__ import annotations

import asyncio
import os
from typing import Any

import structlog

from stackrun.core.errors import ProviderError
from stackrun.providers.base import BaseProviderAdapter, Outputs, ProviderResourceSchema
from stackrun.providers.registry import register_provider

logger = structlog.get_logger()

DEFAULT_INTERPRETER = ("/bin/sh", "-c")
STDERR_TAIL = 2000


class CommandProvider(BaseProviderAdapter):
    """Runs local shell commands as a resource lifecycle.

    ``create`` runs on create (and on update when no ``update`` command is
    given); ``delete`` runs on delete with the recorded stdout exposed as
    ``STACKRUN_COMMAND_STDOUT``.

    A configured instance supplies defaults for every resource it serves:
    ``environment`` is merged under each spec's own, ``dir`` and
    ``interpreter`` apply when the spec leaves them out.
    """

    kind = "command"
    description = "Local shell command with create/update/delete scripts"
    updatable_fields = frozenset({"update", "delete", "environment"})

    def __init__(
        self,
        environment: dict[str, Any] | None = None,
        dir: str | None = None,
        interpreter: list[str] | None = None,
    ) -> None:
        self.environment = {k: str(v) for k, v in (environment or {}).items()}
        self.dir = dir
        self.interpreter = list(interpreter) if interpreter else None

    def schema(self) -> ProviderResourceSchema:
        return ProviderResourceSchema(
            name=self.kind,
            description=self.description,
            attributes={
                "create": "Command run on create",
                "update": "Command run on in-place update",
                "delete": "Command run on delete",
                "interpreter": "Interpreter argv prefix (default /bin/sh -c)",
                "environment": "Extra environment variables",
                "dir": "Working directory",
            },
        )

    async def create(self, spec: dict[str, Any]) -> Outputs:
        command = spec.get("create")
        if not command:
            raise ProviderError("command resource requires a 'create' command")
        return await self._run(command, spec)

    async def update(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        changed = {k for k in set(old_spec) | set(new_spec) if old_spec.get(k) != new_spec.get(k)}
        if changed <= {"delete"}:
            return dict(old_outputs)
        command = new_spec.get("update") or new_spec.get("create")
        return await self._run(command, new_spec)

    async def delete(self, spec: dict[str, Any], outputs: Outputs) -> None:
        command = spec.get("delete")
        if not command:
            return None
        extra = {"STACKRUN_COMMAND_STDOUT": str(outputs.get("stdout", ""))}
        await self._run(command, spec, extra_env=extra)
        return None

    async def _run(
        self,
        command: str,
        spec: dict[str, Any],
        *,
        extra_env: dict[str, str] | None = None,
    ) -> Outputs:
        interpreter = list(spec.get("interpreter") or self.interpreter or DEFAULT_INTERPRETER)
        env = dict(os.environ)
        env.update(self.environment)
        env.update({k: str(v) for k, v in (spec.get("environment") or {}).items()})
        env.update(extra_env or {})

        logger.info("command_started", interpreter=interpreter[0])
        process = await asyncio.create_subprocess_exec(
            *interpreter,
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=spec.get("dir") or self.dir,
        )
        stdout, stderr = await process.communicate()
        out = stdout.decode(errors="replace").rstrip("\n")
        err = stderr.decode(errors="replace").rstrip("\n")

        if process.returncode != 0:
            raise ProviderError(
                f"command exited with status {process.returncode}: {err[-STDERR_TAIL:]}",
                details={"returncode": process.returncode},
            )
        return {"stdout": out, "stderr": err}


register_provider(
    CommandProvider.kind,
    CommandProvider,
    version="1.0.0",
    description=CommandProvider.description,
)
