from __future__ import annotations

import asyncio
from pathlib import Path

from harvester.providers.base import RawOutput
from harvester.schemas.jobs import ProviderType
from harvester.services.dispatcher import DispatchResult
from harvester.services.merge import MergeStats
from harvester.services.records import JobRecord


class GatedDispatcher:
    """Stands in for the real dispatcher; each job runs until its gate is released."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.active = 0
        self.max_active = 0
        self._gates: dict[str, asyncio.Event] = {}

    def gate(self, job_id: str) -> asyncio.Event:
        return self._gates.setdefault(job_id, asyncio.Event())

    def release(self, *job_ids: str) -> None:
        for job_id in job_ids:
            self.gate(job_id).set()

    async def dispatch(self, job: JobRecord) -> DispatchResult:
        self.started.append(job.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate(job.id).wait()
            if job.id in self.failures:
                raise self.failures[job.id]
        finally:
            self.active -= 1
        return DispatchResult(
            provider=ProviderType.SCRAPER,
            output=RawOutput(path=Path(f"/tmp/{job.id}/output.json"), provider=ProviderType.SCRAPER),
            stats=MergeStats(total=3, new=1, updated=1, skipped=1),
        )


async def eventually(check, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
