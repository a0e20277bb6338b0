import asyncio
import os
import sys
import tempfile
import textwrap
import time

import pytest

os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="drafteam-uploads-"))
os.environ["JOB_STORE"] = "memory"

from drafteam.jobs import ConversionTracker  # noqa: E402
from drafteam.store import InMemoryJobStore  # noqa: E402

CONVERTER_TEMPLATE = """\
import argparse
import json
import sys
import time
from pathlib import Path

parser = argparse.ArgumentParser()
parser.add_argument("--input", required=True)
parser.add_argument("--output", required=True)
parser.add_argument("--projection", required=True)
parser.add_argument("--detailed", action="store_true")
args = parser.parse_args()

Path(__file__).with_suffix(".argv").write_text(json.dumps(sys.argv[1:]))

for line in {stdout!r}:
    print(line, flush=True)
    time.sleep({step!r})
if {stderr!r}:
    sys.stderr.write({stderr!r})
    sys.stderr.flush()
if {write_output!r}:
    Path(args.output).write_text("0\\nSECTION\\n0\\nENTITIES\\n0\\nENDSEC\\n0\\nEOF\\n")
time.sleep({sleep!r})
sys.exit({exit_code!r})
"""


@pytest.fixture
def make_converter(tmp_path):
    """Write a stand-in for the external converter and return its path."""
    counter = {"n": 0}

    def _make(stdout=(), stderr="", exit_code=0, write_output=True, sleep=0.0, step=0.0):
        counter["n"] += 1
        script = tmp_path / f"fake_converter_{counter['n']}.py"
        script.write_text(
            CONVERTER_TEMPLATE.format(
                stdout=list(stdout),
                stderr=stderr,
                exit_code=exit_code,
                write_output=write_output,
                sleep=sleep,
                step=step,
            )
        )
        return script

    return _make


@pytest.fixture
def make_tracker(tmp_path):
    def _make(script, **kwargs):
        kwargs.setdefault("store", InMemoryJobStore())
        kwargs.setdefault("timeout_seconds", 30)
        kwargs.setdefault("python_executable", sys.executable)
        return ConversionTracker(
            upload_dir=tmp_path / "uploads",
            output_dir=tmp_path / "outputs",
            converter_script=script,
            **kwargs,
        )

    return _make


async def wait_for_job(tracker, job_id, predicate, timeout=15.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = await tracker.get_status(job_id)
        if predicate(job):
            return job
        await asyncio.sleep(interval)
    raise AssertionError(f"job {job_id} never reached the expected state")


async def wait_for_terminal(tracker, job_id, timeout=15.0):
    return await wait_for_job(tracker, job_id, lambda job: job.terminal, timeout=timeout)


async def wait_idle(tracker, timeout=15.0):
    deadline = time.monotonic() + timeout
    while tracker._tasks:
        if time.monotonic() > deadline:
            raise AssertionError("tracker still supervising jobs")
        await asyncio.sleep(0.02)


def poll_until(client, job_id, statuses, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/osm/status/{job_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} never reached {statuses}")


OSM_SAMPLE = textwrap.dedent(
    """\
    <?xml version="1.0" encoding="UTF-8"?>
    <osm version="0.6">
      <node id="1" lat="51.5" lon="-0.12"/>
    </osm>
    """
).encode()
