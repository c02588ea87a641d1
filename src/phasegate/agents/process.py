from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from phasegate.agents.registry import AgentRequest
from phasegate.errors import ExecutionError


class ProcessAgent:
    """Runs an external command as an agent.

    The request is written to stdin as a JSON document. Stdout must hold a JSON
    list of findings, a ``{"findings": [...]}`` object, or one finding object
    per line. A non-zero exit code is an execution error.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        agent_id: str = "process",
        working_directory: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("ProcessAgent needs a non-empty command.")
        self.command = list(command)
        self.agent_id = agent_id
        self.working_directory = working_directory

    def _parse_stdout(self, raw: str) -> Any:
        text = raw.strip()
        if not text:
            return []
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
        findings: list[Any] = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                findings.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ExecutionError(
                    f"Agent '{self.agent_id}' produced undecodable output: {line[:200]}",
                    agent_id=self.agent_id,
                ) from exc
        return findings

    async def run(self, request: AgentRequest) -> Any:
        payload = json.dumps(request.to_payload(), ensure_ascii=False)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(
                f"Agent binary not found: {self.command[0]}",
                agent_id=self.agent_id,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate(payload.encode("utf-8"))
        except asyncio.CancelledError:
            # Timed out by the adapter; do not leave the child running.
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            stderr_output = stderr.decode("utf-8", errors="replace").strip()
            raise ExecutionError(
                f"Agent '{self.agent_id}' exited with code {process.returncode}: "
                f"{stderr_output[-1000:]}",
                agent_id=self.agent_id,
                exit_code=process.returncode,
            )
        return self._parse_stdout(stdout.decode("utf-8", errors="replace"))
