from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from porch.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BuildResult,
    BuildWorker,
)

logger = logging.getLogger(__name__)


def prompt_path_for(output_path: Path) -> Path:
    return output_path.with_name(output_path.stem + "-prompt.txt")


class ClaudeWorker(BuildWorker):
    """Build worker driving the ``claude`` CLI in streaming JSON mode."""

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "assistant":
            message = event.get("message")
            blocks = message.get("content") if isinstance(message, dict) else None
            if isinstance(blocks, list):
                return "".join(
                    block["text"] + "\n"
                    for block in blocks
                    if isinstance(block, dict)
                    and block.get("type") == "text"
                    and isinstance(block.get("text"), str)
                )
            return ""
        content = event.get("content")
        if isinstance(content, str):
            return content
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def build(self, prompt: str, output_path: Path, cwd: Path) -> BuildResult:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path_for(output_path).write_text(prompt, encoding="utf-8")
        output_path.write_text("", encoding="utf-8")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude worker did not expose stdout.", backend="claude", retriable=False
            )

        chunks: list[str] = []
        success = False
        saw_result = False
        cost_usd: float | None = None
        duration_ms: int | None = None

        # stderr is drained concurrently; a full stderr pipe would stall stdout.
        stderr_task = asyncio.create_task(process.stderr.read()) if process.stderr is not None else None

        def _append(text: str) -> None:
            chunks.append(text)
            with output_path.open("a", encoding="utf-8") as handle:
                handle.write(text)

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    _append(line + "\n")
                    continue

                if not isinstance(event, dict):
                    continue
                if event.get("type") == "result":
                    saw_result = True
                    success = event.get("subtype") == "success" and not event.get("is_error")
                    if success and isinstance(event.get("result"), str):
                        _append(event["result"])
                    elif not success:
                        _append(f"\n[worker error: {event.get('subtype', 'unknown')}]\n")
                    if isinstance(event.get("total_cost_usd"), int | float):
                        cost_usd = float(event["total_cost_usd"])
                    if isinstance(event.get("duration_ms"), int | float):
                        duration_ms = int(event["duration_ms"])
                    continue

                content = self._extract_content(event)
                if content:
                    _append(content)

            if parse_buffer:
                _append(parse_buffer)

            return_code = await process.wait()
        except asyncio.CancelledError:
            if stderr_task is not None:
                stderr_task.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stderr_output = ""
        if stderr_task is not None:
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude worker failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
        if not saw_result:
            success = True
        logger.debug("Claude worker finished: success=%s cost=%s", success, cost_usd)
        return BuildResult(
            success=success,
            output="".join(chunks),
            cost_usd=cost_usd,
            duration_ms=duration_ms,
        )
