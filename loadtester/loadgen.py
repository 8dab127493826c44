from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

logger = logging.getLogger("loadtester.loadgen")


class LoadGeneratorError(RuntimeError):
    pass


class LoadGenerator:
    """Runs `hey` as a subprocess and hands back its text report."""

    def __init__(self, binary: str = "hey") -> None:
        self.binary = binary

    def build_command(
        self,
        url: str,
        duration: str,
        concurrency: int,
        *,
        method: Optional[str] = None,
        body_file: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> List[str]:
        cmd = [self.binary, "-z", str(duration), "-c", str(int(concurrency))]
        if method:
            cmd += ["-m", method]
        if body_file:
            cmd += ["-D", body_file]
        if content_type:
            cmd += ["-T", content_type]
        cmd.append(url)
        return cmd

    async def run(
        self,
        url: str,
        duration: str,
        concurrency: int,
        *,
        method: Optional[str] = None,
        body_file: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        cmd = self.build_command(
            url, duration, concurrency, method=method, body_file=body_file, content_type=content_type
        )
        logger.debug("exec: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise LoadGeneratorError(f"cannot execute {self.binary}: {e}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            msg = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise LoadGeneratorError(f"{self.binary} failed: {msg}")
        return stdout.decode(errors="replace")
