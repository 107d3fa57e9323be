from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from harvester.core.config import Settings
from harvester.providers.base import RawOutput, ScrapeProvider, job_workdir
from harvester.schemas.jobs import JobConfig, ProviderType

logger = logging.getLogger(__name__)

QUERIES_FILENAME = "queries.txt"
OUTPUT_FILENAME = "output.json"


class ScraperExecutionError(Exception):
    """Raised when the scraper container cannot run or produces no output."""


def _proxies(value: list[str] | str | None) -> str:
    if isinstance(value, list):
        return ",".join(value)
    return value or ""


class BrowserScrapeProvider(ScrapeProvider):
    provider_type = ProviderType.SCRAPER

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def build_command(self, workdir: Path, config: JobConfig) -> list[str]:
        settings = self.settings
        if settings.scraper_volume_name:
            # The data dir is a named volume shared with the docker host.
            relative = workdir.relative_to(Path(settings.data_dir)).as_posix()
            mount = f"{settings.scraper_volume_name}:/data"
            container_dir = f"/data/{relative}"
        else:
            mount = f"{workdir}:/data"
            container_dir = "/data"

        max_results = config.max_results or settings.default_max_results
        env = {
            "QUERIES_FILE": f"{container_dir}/{QUERIES_FILENAME}",
            "OUTPUT_FILE": f"{container_dir}/{OUTPUT_FILENAME}",
            "DEPTH": str(config.depth or 1),
            "MAX_RESULTS": str(max_results),
            "CONCURRENCY": str(config.concurrency or 2),
            "LANG_CODE": config.lang or "en",
            "ZOOM": str(config.zoom or 15),
            "PROXIES": _proxies(config.proxies),
            "DEBUG_MODE": "true" if config.debug else "false",
            "GEO": config.geo or "",
        }

        command = [
            settings.scraper_docker_bin,
            "run",
            "--rm",
            f"--memory={settings.scraper_memory}",
            f"--cpus={settings.scraper_cpus}",
            f"--shm-size={settings.scraper_shm_size}",
            "-v",
            mount,
        ]
        for key, value in env.items():
            command.extend(["-e", f"{key}={value}"])
        command.append(settings.scraper_image)
        return command

    async def execute_scrape(self, queries: list[str], job_id: str, config: JobConfig) -> RawOutput:
        workdir = job_workdir(self.settings.data_dir, job_id)
        workdir.mkdir(parents=True, exist_ok=True)
        (workdir / QUERIES_FILENAME).write_text("\n".join(queries), encoding="utf-8")
        output_path = workdir / OUTPUT_FILENAME

        command = self.build_command(workdir, config)
        logger.info("scrape job %s: running %s with %s queries", job_id, self.settings.scraper_image, len(queries))
        await self._run(command, job_id)

        if not output_path.exists():
            raise ScraperExecutionError(f"scraper produced no output file at {output_path}")
        if output_path.stat().st_size == 0:
            raise ScraperExecutionError(f"scraper output file {output_path} is empty")
        return RawOutput(path=output_path, provider=self.provider_type)

    async def _run(self, command: list[str], job_id: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ScraperExecutionError(f"cannot start scraper: {command[0]} not found") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.settings.scraper_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ScraperExecutionError(
                f"scraper timed out after {self.settings.scraper_timeout_seconds:g}s"
            ) from exc

        if stdout:
            logger.debug("scrape job %s stdout: %s", job_id, stdout.decode(errors="replace")[-2000:])
        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-1000:] if stderr else ""
            raise ScraperExecutionError(f"scraper exited with code {process.returncode}: {tail}")
