"""Tests for BuildWorker with real shell commands.

Each test runs the install/build commands in a temporary project directory,
publishes through a real LogPublisher on the fake stream and uploads into an
in-memory artifact store.
"""

import asyncio
import json
import os

import pytest
import pytest_asyncio

from launchpad.bus.messages import BuildOutcome
from launchpad.worker.build import BuildWorker
from launchpad.worker.lifecycle import WorkerLifecycle
from launchpad.worker.publisher import LogPublisher

from fakes import InMemoryArtifactStore

pytestmark = pytest.mark.integration

TOPIC = "container-logs"


@pytest_asyncio.fixture
async def publisher(bus):
    pub = LogPublisher(
        bus,
        topic=TOPIC,
        partition_key="log",
        project_uri="demo123",
        deployment_id="dep-001",
        event_id="evt-1",
        lifecycle=WorkerLifecycle(),
    )
    await pub.start()
    return pub


async def read_payloads(redis) -> list[dict]:
    return [json.loads(fields["value"]) for _id, fields in await redis.xrange(TOPIC)]


async def read_lines(redis) -> list[str]:
    return [p["log"] for p in await read_payloads(redis) if p["type"] == "log"]


# ---------------------------------------------------------------------------
# Successful builds
# ---------------------------------------------------------------------------


async def test_successful_build_uploads_outputs(make_build_settings, publisher, artifact_store, redis):
    """install and build run in order, dist/ lands under __outputs/{project}/."""
    settings = make_build_settings(
        build_command="echo build && mkdir -p dist && printf 'hi\\n' > dist/index.html",
    )
    worker = BuildWorker(settings, publisher, artifact_store)

    result = await worker.run()

    assert result.outcome is BuildOutcome.SUCCESS
    assert result.exit_code == 0
    assert result.uploaded == 1
    assert artifact_store.objects["__outputs/demo123/index.html"] == (b"hi\n", "text/html")

    lines = await read_lines(redis)
    assert lines[0] == "Executing script..."
    assert lines.index("install") < lines.index("build")
    assert lines[-3:] == ["Uploading index.html...", "Upload complete...", "Finalizing..."]

    payloads = await read_payloads(redis)
    assert payloads[-1]["type"] == "build.completed"
    assert payloads[-1]["outcome"] == "success"


async def test_nested_outputs_keep_relative_paths(make_build_settings, publisher, artifact_store):
    settings = make_build_settings(
        build_command="mkdir -p dist/assets/css && echo a > dist/index.html && echo b > dist/assets/css/site.css",
    )

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.uploaded == 2
    assert sorted(artifact_store.objects) == [
        "__outputs/demo123/assets/css/site.css",
        "__outputs/demo123/index.html",
    ]
    assert artifact_store.objects["__outputs/demo123/assets/css/site.css"][1] == "text/css"


async def test_build_sees_prefixed_environment(make_build_settings, publisher, artifact_store, redis):
    """Build-scoped variables reach the child with their prefix already removed."""
    settings = make_build_settings(
        build_command='echo "api=$API_URL" && mkdir -p dist && touch dist/index.html',
        environment={"API_URL": "https://api.example.com"},
    )

    await BuildWorker(settings, publisher, artifact_store, base_env=dict(os.environ)).run()

    assert "api=https://api.example.com" in await read_lines(redis)


async def test_stderr_output_is_published(make_build_settings, publisher, artifact_store, redis):
    settings = make_build_settings(
        build_command="echo 'npm WARN deprecated' >&2 && mkdir -p dist && touch dist/index.html",
    )

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.outcome is BuildOutcome.SUCCESS
    assert "npm WARN deprecated" in await read_lines(redis)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


async def test_nonzero_exit_publishes_error_and_skips_upload(make_build_settings, publisher, artifact_store, redis):
    settings = make_build_settings(build_command="mkdir -p dist && touch dist/index.html && exit 3")

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.outcome is BuildOutcome.FAILURE
    assert result.exit_code == 3
    assert artifact_store.objects == {}

    lines = await read_lines(redis)
    assert "Error: build exited with code 3" in lines
    assert "Upload complete..." not in lines
    assert (await read_payloads(redis))[-1]["outcome"] == "failure"


async def test_install_failure_stops_before_build(make_build_settings, publisher, artifact_store, redis):
    settings = make_build_settings(install_command="false", build_command="echo should-not-run")

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.outcome is BuildOutcome.FAILURE
    assert "should-not-run" not in await read_lines(redis)


async def test_missing_output_directory_fails(make_build_settings, publisher, artifact_store, redis):
    settings = make_build_settings(build_command="echo built-nothing")

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.outcome is BuildOutcome.FAILURE
    assert any(line.startswith("Error:") and "output directory not found" in line for line in await read_lines(redis))


async def test_upload_failure_keeps_earlier_files(make_build_settings, publisher, redis):
    """Files uploaded before the failing one stay in the store."""
    store = InMemoryArtifactStore(fail_keys={"__outputs/demo123/index.html"})
    settings = make_build_settings(
        build_command="mkdir -p dist && echo a > dist/a.txt && echo b > dist/index.html",
    )

    result = await BuildWorker(settings, publisher, store).run()

    assert result.outcome is BuildOutcome.FAILURE
    assert list(store.objects) == ["__outputs/demo123/a.txt"]
    assert "Upload complete..." not in await read_lines(redis)


async def test_spawn_failure_reports_error(make_build_settings, publisher, artifact_store, redis, tmp_path):
    settings = make_build_settings(root_dir=str(tmp_path / "does-not-exist"))

    result = await BuildWorker(settings, publisher, artifact_store).run()

    assert result.outcome is BuildOutcome.FAILURE
    assert result.exit_code is None
    assert any(line.startswith("Error: failed to start build") for line in await read_lines(redis))


async def test_terminate_kills_running_build(make_build_settings, publisher, artifact_store):
    settings = make_build_settings(build_command="sleep 30")
    worker = BuildWorker(settings, publisher, artifact_store)

    task = asyncio.create_task(worker.run())
    for _ in range(100):
        if worker._process is not None:
            break
        await asyncio.sleep(0.02)

    worker.terminate()
    result = await asyncio.wait_for(task, timeout=10)

    assert result.outcome is BuildOutcome.FAILURE
    assert result.exit_code != 0


async def test_command_joins_install_and_build(make_build_settings, publisher, artifact_store):
    settings = make_build_settings(install_command="npm ci", build_command="npm run build")
    assert BuildWorker(settings, publisher, artifact_store).command == "npm ci && npm run build"
