"""
Artifact Arbiter

Serializes appends to newline-delimited output files. Each artifact path has
exactly one writer task fed by a queue; callers hand over a batch of lines and
await the write. A batch is written with a single write call, so lines from
concurrent work units are never interleaved.
"""

import asyncio
import logging
import os
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_Request = Optional[Tuple[List[str], asyncio.Future]]


def artifact_name(organization_id: str, resource_type: str, error: bool = False) -> str:
    """File name for a result artifact, e.g. A0001_Patient.ndjson."""
    suffix = "-error" if error else ""
    return f"{organization_id}_{resource_type}{suffix}.ndjson"


class _ArtifactWriter:
    def __init__(self, path: str):
        self.path = path
        self.queue: "asyncio.Queue[_Request]" = asyncio.Queue()
        self.task = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            request = await self.queue.get()
            if request is None:
                break

            lines, future = request
            try:
                await asyncio.to_thread(self._write, lines)
            except OSError as e:
                logger.error(f"Failed to append {len(lines)} lines to {self.path}: {e}")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(len(lines))

    def _write(self, lines: List[str]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("".join(line + "\n" for line in lines))


class ArtifactArbiter:
    """
    Owns one writer task per artifact path.
    Must be used from within a running event loop.
    """

    def __init__(self):
        self._writers: Dict[str, _ArtifactWriter] = {}
        self._closed = False

    async def append(self, path: str, lines: List[str]) -> int:
        """
        Append lines to an artifact and wait until they are written.
        Returns the number of lines written.
        """
        if not lines:
            return 0
        return await self._submit(path, list(lines))

    async def ensure(self, path: str) -> None:
        """Create the artifact if it does not exist yet, leaving any content in place."""
        await self._submit(path, [])

    async def _submit(self, path: str, lines: List[str]) -> int:
        if self._closed:
            raise RuntimeError("ArtifactArbiter is closed")

        writer = self._writers.get(path)
        if writer is None:
            writer = _ArtifactWriter(path)
            self._writers[path] = writer

        future = asyncio.get_running_loop().create_future()
        await writer.queue.put((lines, future))
        return await future

    async def close(self):
        """Drain pending writes and stop all writer tasks."""
        self._closed = True
        writers = list(self._writers.values())
        for writer in writers:
            await writer.queue.put(None)
        if writers:
            await asyncio.gather(*(w.task for w in writers))
        self._writers.clear()
