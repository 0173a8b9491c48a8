"""Local fleet launcher.

Starts a sync server, spawns one provider and N requestor processes with
the ``BENCH_*`` environment, supervises them against a wall-clock timeout,
and collects each instance's outcome and results summary.

Usage:
    blockswap-bench run-local --requestors 2 --count 10 --size 1MiB
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from blockswap_bench.runenv import ENV_PREFIX, format_params
from blockswap_bench.sync.service import SyncServer

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
STOP_GRACE = 10.0


@dataclass
class InstanceProcess:
    """Manages one benchmark instance subprocess."""

    seq: int
    group_id: str
    outputs_dir: Path
    process: subprocess.Popen | None = None
    timed_out: bool = False
    _log_file: Any = field(default=None, repr=False)

    def environment(
        self,
        *,
        run_id: str,
        instance_count: int,
        sync_url: str,
        test_case: str,
        params: Mapping[str, Any],
    ) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            f"{ENV_PREFIX}TEST_CASE": test_case,
            f"{ENV_PREFIX}GROUP_ID": self.group_id,
            f"{ENV_PREFIX}INSTANCE_COUNT": str(instance_count),
            f"{ENV_PREFIX}INSTANCE_SEQ": str(self.seq),
            f"{ENV_PREFIX}RUN_ID": run_id,
            f"{ENV_PREFIX}INSTANCE_PARAMS": format_params(params),
            f"{ENV_PREFIX}SYNC_URL": sync_url,
            f"{ENV_PREFIX}OUTPUTS_DIR": str(self.outputs_dir),
            f"{ENV_PREFIX}LISTEN_HOST": "127.0.0.1",
        })
        return env

    def start(self, env: Mapping[str, str], log_level: str = "WARNING") -> None:
        """Start the instance subprocess; output goes to ``instance.log``."""
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        self._log_file = open(self.outputs_dir / "instance.log", "wb")
        self.process = subprocess.Popen(
            [sys.executable, "-m", "blockswap_bench.cli", "--log-level", log_level, "instance"],
            env=dict(env),
            stdout=self._log_file,
            stderr=subprocess.STDOUT,
        )

    def stop(self) -> None:
        """Stop the subprocess if it is still running."""
        if self.process and self.process.poll() is None:
            self.process.send_signal(signal.SIGTERM)
            try:
                self.process.wait(timeout=STOP_GRACE)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def exit_code(self) -> int | None:
        return None if self.process is None else self.process.poll()

    def events(self) -> list[dict[str, Any]]:
        path = self.outputs_dir / "events.jsonl"
        if not path.exists():
            return []
        with open(path) as f:
            return [json.loads(line) for line in f if line.strip()]

    def result(self) -> dict[str, Any]:
        """Outcome and (for requestors) the transfer summary."""
        outcomes = [e for e in self.events() if e.get("type") == "outcome"]
        last = outcomes[-1] if outcomes else {}
        result: dict[str, Any] = {
            "seq": self.seq,
            "group_id": self.group_id,
            "exit_code": self.exit_code,
            "outcome": "timeout" if self.timed_out else last.get("outcome", "unknown"),
            "error": last.get("error", ""),
        }
        summary_path = self.outputs_dir / "results.summary.json"
        if summary_path.exists():
            with open(summary_path) as f:
                result["transfer"] = json.load(f)
        return result


def create_fleet(requestors: int, base_dir: str | Path) -> list[InstanceProcess]:
    """One provider (seq 0) plus ``requestors`` requestor instances, not yet started."""
    base = Path(base_dir)
    fleet = [InstanceProcess(seq=0, group_id="providers", outputs_dir=base / "instance_0")]
    for i in range(1, requestors + 1):
        fleet.append(InstanceProcess(seq=i, group_id="requestors", outputs_dir=base / f"instance_{i}"))
    return fleet


async def wait_for_fleet(fleet: list[InstanceProcess], timeout: float) -> bool:
    """Wait until every process exits. Returns False if the timeout hit."""
    deadline = time.monotonic() + timeout
    while any(inst.is_alive() for inst in fleet):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(POLL_INTERVAL)
    return True


def stop_fleet(fleet: list[InstanceProcess]) -> None:
    for inst in fleet:
        if inst.is_alive():
            inst.timed_out = True
            logger.warning("Instance %d (%s) still running, terminating", inst.seq, inst.group_id)
        inst.stop()


async def run_local(
    requestors: int = 1,
    params: Mapping[str, Any] | None = None,
    test_case: str = "speed-test",
    timeout: float = 300.0,
    base_dir: str | Path | None = None,
    log_level: str = "WARNING",
) -> dict[str, Any]:
    """Run one full fleet on localhost and summarize the outcome."""
    if requestors < 1:
        raise ValueError("need at least one requestor")
    params = dict(params or {})
    base_dir = Path(base_dir or tempfile.mkdtemp(prefix="blockswap_run_"))
    run_id = uuid.uuid4().hex[:12]
    fleet = create_fleet(requestors, base_dir)

    server = SyncServer(host="127.0.0.1", port=0, instance_count=len(fleet))
    await server.start()
    started = time.monotonic()
    try:
        for inst in fleet:
            inst.start(
                inst.environment(
                    run_id=run_id,
                    instance_count=len(fleet),
                    sync_url=server.url,
                    test_case=test_case,
                    params=params,
                ),
                log_level=log_level,
            )
        finished = await wait_for_fleet(fleet, timeout)
        if not finished:
            logger.error("Run %s exceeded %.0fs", run_id, timeout)
    finally:
        # stop_fleet blocks in Process.wait.
        await asyncio.to_thread(stop_fleet, fleet)
        await server.stop()

    instances = [inst.result() for inst in fleet]
    return {
        "run_id": run_id,
        "test_case": test_case,
        "params": params,
        "instance_count": len(fleet),
        "outputs_dir": str(base_dir),
        "elapsed_seconds": round(time.monotonic() - started, 3),
        "success": all(i["outcome"] == "success" for i in instances),
        "instances": instances,
    }
