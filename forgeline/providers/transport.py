"""
JSONL subprocess transport shared by the CLI-backed providers.

One JSON object per stdout line. stderr is drained in the background
so a chatty child cannot block on a full pipe; it is only surfaced
when the process exits non-zero.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from typing import Any, AsyncIterator

from loguru import logger

from forgeline.classifier import classify
from forgeline.errors import ProviderInstallationError, ProviderStreamError
from forgeline.providers import CancellationToken

_KILL_AFTER_SECONDS = 3.0
# Agent CLIs can emit very long single lines (file contents in tool results).
_LINE_LIMIT = 16 * 1024 * 1024


async def spawn_jsonl(
    cmd: list[str],
    cwd: str,
    token: CancellationToken | None = None,
    env: dict[str, str] | None = None,
    stdin_data: str | None = None,
) -> AsyncIterator[dict[str, Any]]:
    logger.debug(f"[PROVIDER] spawn {cmd[0]} in {cwd}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env={**os.environ, **(env or {})},
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_LINE_LIMIT,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ProviderInstallationError(f"Could not start {cmd[0]}: {e}", raw=str(e)) from e

    stderr_chunks: list[bytes] = []

    async def _drain_stderr() -> None:
        assert proc.stderr is not None
        while chunk := await proc.stderr.read(4096):
            stderr_chunks.append(chunk)

    drain = asyncio.create_task(_drain_stderr())

    try:
        if stdin_data is not None:
            assert proc.stdin is not None
            proc.stdin.write(stdin_data.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()

        assert proc.stdout is not None
        async for raw_line in proc.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ProviderStreamError(f"Malformed message from {cmd[0]}", raw=line) from e
            if not isinstance(record, dict):
                raise ProviderStreamError(f"Unexpected message from {cmd[0]}", raw=line)
            yield record

        returncode = await proc.wait()
        await drain

        if returncode != 0 and not (token and token.cancelled):
            stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
            raw = stderr or f"{cmd[0]} exited with code {returncode}"
            verdict = classify(raw)
            raise ProviderStreamError(verdict.message, raw=raw, classified=verdict)
    finally:
        if proc.returncode is None:
            logger.debug(f"[PROVIDER] terminating {cmd[0]} (pid {proc.pid})")
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_KILL_AFTER_SECONDS)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        if not drain.done():
            drain.cancel()


async def probe_version(path: str, timeout: float = 5.0) -> str | None:
    """`<cli> --version`, or None if it fails or hangs."""
    try:
        proc = await asyncio.create_subprocess_exec(
            path, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.debug(f"[PROVIDER] {path} --version failed: {e}")
        return None
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return None
    return out.decode("utf-8", errors="replace").strip() or None
