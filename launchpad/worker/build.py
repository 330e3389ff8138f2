"""BuildWorker: runs install + build for one deployment and uploads the output.

Sequence for a run:
1. spawn `{install} && {build}` in the project root with the build env
2. drain stdout/stderr continuously into the LogPublisher
3. on exit 0, upload every regular file under the output dir to
   __outputs/{project_uri}/{relative path}
4. publish "Upload complete..." and "Finalizing..." then build.completed

A failed spawn, a non-zero exit or a failed upload publishes an "Error: ..."
line and a build.completed failure instead. Files uploaded before an upload
failure stay in place.
"""

import asyncio
import os
import signal
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from launchpad.bus.messages import BuildOutcome
from launchpad.core.config import BuildSettings
from launchpad.core.exceptions import ArtifactStoreError, BuildError, UploadError
from launchpad.storage.artifact_store import ArtifactStore, output_key
from launchpad.worker.publisher import LogPublisher

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 4096

UPLOAD_COMPLETE_LINE = "Upload complete..."
FINALIZING_LINE = "Finalizing..."


@dataclass
class BuildResult:
    outcome: BuildOutcome
    exit_code: int | None = None
    uploaded: int = 0
    error: str | None = None


class BuildWorker:
    """Executes one build. Owns the child process for its lifetime."""

    def __init__(
        self,
        settings: BuildSettings,
        publisher: LogPublisher,
        store: ArtifactStore,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self._publisher = publisher
        self._store = store
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._process: asyncio.subprocess.Process | None = None

    @property
    def command(self) -> str:
        return f"{self.settings.install_command} && {self.settings.build_command}"

    @property
    def root_dir(self) -> Path:
        return Path(self.settings.root_dir)

    @property
    def output_dir(self) -> Path:
        return self.root_dir / self.settings.output_dir

    def build_environment(self) -> dict[str, str]:
        """Worker environment overlaid with the build-scoped variables."""
        return {**self._base_env, **self.settings.environment}

    async def run(self) -> BuildResult:
        await self._publisher.publish_line("Executing script...")

        try:
            exit_code = await self._execute()
        except BuildError as exc:
            return await self._fail(str(exc))

        if exit_code != 0:
            return await self._fail(f"build exited with code {exit_code}", exit_code=exit_code)
        await self._publisher.publish_line("Build complete")

        try:
            uploaded = await self._upload_outputs()
        except UploadError as exc:
            return await self._fail(str(exc), exit_code=exit_code)

        await self._publisher.publish_line(UPLOAD_COMPLETE_LINE)
        await self._publisher.publish_line(FINALIZING_LINE)
        await self._publisher.publish_completed(BuildOutcome.SUCCESS)
        logger.info("build_succeeded", uploaded=uploaded)
        return BuildResult(outcome=BuildOutcome.SUCCESS, exit_code=exit_code, uploaded=uploaded)

    def terminate(self) -> None:
        """Kill the build's process group if it is still running."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        logger.warning("build_process_killed", pid=proc.pid)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _fail(self, reason: str, exit_code: int | None = None) -> BuildResult:
        logger.warning("build_failed", reason=reason, exit_code=exit_code)
        await self._publisher.publish_line(f"Error: {reason}")
        await self._publisher.publish_completed(BuildOutcome.FAILURE)
        return BuildResult(outcome=BuildOutcome.FAILURE, exit_code=exit_code, error=reason)

    async def _execute(self) -> int:
        try:
            self._process = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(self.root_dir),
                env=self.build_environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # own process group, so terminate() reaches grandchildren
            )
        except OSError as exc:
            raise BuildError(f"failed to start build: {exc}") from exc

        logger.info("build_started", pid=self._process.pid, cwd=str(self.root_dir))

        # Readers only enqueue; publishing happens in _forward so a slow bus
        # never stops the pipes from draining.
        queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(self._process.stdout, "stdout", queue)),
            asyncio.create_task(self._pump(self._process.stderr, "stderr", queue)),
        ]
        forwarder = asyncio.create_task(self._forward(queue, expected_eofs=len(readers)))
        try:
            await asyncio.gather(*readers)
            exit_code = await self._process.wait()
            await forwarder
        except asyncio.CancelledError:
            self.terminate()
            for task in (*readers, forwarder):
                task.cancel()
            raise

        await self._publisher.flush()
        return exit_code

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, source: str, queue: asyncio.Queue) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            queue.put_nowait((source, chunk.decode("utf-8", errors="replace")))
        queue.put_nowait(None)

    async def _forward(self, queue: asyncio.Queue, expected_eofs: int) -> None:
        remaining = expected_eofs
        while remaining:
            item = await queue.get()
            if item is None:
                remaining -= 1
                continue
            source, text = item
            if source == "stdout":
                await self._publisher.on_stdout(text)
            else:
                await self._publisher.on_stderr(text)

    async def _upload_outputs(self) -> int:
        output_dir = self.output_dir
        if not output_dir.is_dir():
            raise UploadError(str(output_dir), "output directory not found")

        files = sorted(path for path in output_dir.rglob("*") if path.is_file())
        for path in files:
            relative = path.relative_to(output_dir).as_posix()
            key = output_key(self.settings.project_uri, relative)
            await self._publisher.publish_line(f"Uploading {relative}...")
            try:
                await self._store.put_file(key, path)
            except (ArtifactStoreError, OSError) as exc:
                raise UploadError(key, str(exc)) from exc
            logger.debug("artifact_uploaded", key=key)
        return len(files)
