"""Tests for the local fleet launcher bookkeeping and CLI config loading.

Nothing here spawns subprocesses; process handles are faked.
"""

from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock

import pytest

from blockswap_bench import cli, launcher
from blockswap_bench.errors import ConfigurationError
from blockswap_bench.launcher import InstanceProcess, create_fleet, run_local, stop_fleet
from blockswap_bench.runenv import RunEnv, parse_params


# ── Helpers ──────────────────────────────────────────────────────

def write_events(directory, *events) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / "events.jsonl", "w") as f:
        for e in events:
            f.write(json.dumps(e) + "\n")


def finished_process(code: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.poll.return_value = code
    return proc


@pytest.fixture
def clean_env(monkeypatch):
    for key in ("GROUP_ID", "INSTANCE_COUNT", "INSTANCE_SEQ", "RUN_ID", "TEST_CASE",
                "INSTANCE_PARAMS", "SYNC_URL", "OUTPUTS_DIR", "LISTEN_HOST"):
        monkeypatch.delenv(f"BENCH_{key}", raising=False)
    return monkeypatch


# ── Fleet ────────────────────────────────────────────────────────

class TestFleet:
    def test_create_fleet(self, tmp_path):
        fleet = create_fleet(3, tmp_path)
        assert [i.seq for i in fleet] == [0, 1, 2, 3]
        assert [i.group_id for i in fleet] == ["providers", "requestors", "requestors", "requestors"]
        assert fleet[2].outputs_dir == tmp_path / "instance_2"

    def test_environment(self, tmp_path):
        inst = InstanceProcess(seq=1, group_id="requestors", outputs_dir=tmp_path)
        env = inst.environment(
            run_id="r1", instance_count=2, sync_url="http://127.0.0.1:5050",
            test_case="speed-test", params={"count": 3, "size": "1KiB"},
        )
        assert env["BENCH_GROUP_ID"] == "requestors"
        assert env["BENCH_INSTANCE_SEQ"] == "1"
        assert env["BENCH_INSTANCE_COUNT"] == "2"
        assert env["BENCH_LISTEN_HOST"] == "127.0.0.1"
        assert parse_params(env["BENCH_INSTANCE_PARAMS"]) == {"count": "3", "size": "1KiB"}

    def test_environment_round_trips_into_run_env(self, tmp_path):
        inst = InstanceProcess(seq=0, group_id="providers", outputs_dir=tmp_path)
        env = RunEnv.from_env(inst.environment(
            run_id="r1", instance_count=2, sync_url="http://sync", test_case="example", params={"size": 8},
        ))
        assert env.group_id == "providers"
        assert env.test_case == "example"
        assert env.sink.path == tmp_path / "events.jsonl"

    def test_result_success_with_transfer(self, tmp_path):
        inst = InstanceProcess(seq=1, group_id="requestors", outputs_dir=tmp_path, process=finished_process())
        write_events(tmp_path, {"type": "message", "message": "hi"}, {"type": "outcome", "outcome": "success"})
        with open(tmp_path / "results.summary.json", "w") as f:
            json.dump({"fetches": 3, "total_seconds": 0.2}, f)
        result = inst.result()
        assert result["outcome"] == "success"
        assert result["exit_code"] == 0
        assert result["transfer"]["fetches"] == 3

    def test_result_failure(self, tmp_path):
        inst = InstanceProcess(seq=0, group_id="providers", outputs_dir=tmp_path, process=finished_process(1))
        write_events(tmp_path, {"type": "outcome", "outcome": "failure", "error": "bad count"})
        result = inst.result()
        assert result["outcome"] == "failure"
        assert result["error"] == "bad count"
        assert "transfer" not in result

    def test_result_without_events(self, tmp_path):
        inst = InstanceProcess(seq=0, group_id="providers", outputs_dir=tmp_path / "missing")
        assert inst.result()["outcome"] == "unknown"

    def test_stop_fleet_marks_timeouts(self, tmp_path):
        running = MagicMock()
        running.poll.side_effect = [None, None, 0]
        slow = InstanceProcess(seq=0, group_id="providers", outputs_dir=tmp_path, process=running)
        done = InstanceProcess(seq=1, group_id="requestors", outputs_dir=tmp_path, process=finished_process())
        stop_fleet([slow, done])
        assert slow.timed_out is True
        assert done.timed_out is False
        running.send_signal.assert_called_once()
        assert slow.result()["outcome"] == "timeout"

    @pytest.mark.asyncio
    async def test_run_local_stops_fleet_off_the_event_loop(self, tmp_path, monkeypatch):
        stop_threads: list[int] = []
        monkeypatch.setattr(InstanceProcess, "start", lambda self, env, log_level="WARNING": None)
        monkeypatch.setattr(launcher, "stop_fleet", lambda fleet: stop_threads.append(threading.get_ident()))

        summary = await run_local(requestors=2, params={"count": 1}, timeout=1.0, base_dir=tmp_path)
        assert stop_threads and stop_threads[0] != threading.get_ident()
        assert summary["instance_count"] == 3
        assert summary["success"] is False
        assert [i["outcome"] for i in summary["instances"]] == ["unknown"] * 3


# ── CLI ──────────────────────────────────────────────────────────

class TestInstanceConfig:
    def test_flags_only(self, clean_env):
        args = cli.parse_args([
            "instance", "--group", "providers", "--instance-count", "2",
            "-p", "count=3", "-p", "size=1KiB",
        ])
        env = cli.load_instance_config(args)
        assert env.group_id == "providers"
        assert env.instance_count == 2
        assert env.params == {"count": "3", "size": "1KiB"}

    def test_precedence(self, clean_env, tmp_path):
        clean_env.setenv("BENCH_GROUP_ID", "providers")
        clean_env.setenv("BENCH_INSTANCE_COUNT", "5")
        clean_env.setenv("BENCH_RUN_ID", "from-env")
        clean_env.setenv("BENCH_INSTANCE_PARAMS", "count=1|size=8")
        config = tmp_path / "instance.json"
        config.write_text(json.dumps({"instance_count": 3, "run_id": "from-file"}))

        args = cli.parse_args(["instance", "-c", str(config), "--run-id", "from-flag", "-p", "count=9"])
        env = cli.load_instance_config(args)
        assert env.group_id == "providers"
        assert env.instance_count == 3
        assert env.run_id == "from-flag"
        assert env.params == {"count": "9", "size": "8"}

    def test_missing_config_file(self, clean_env, tmp_path):
        args = cli.parse_args(["instance", "-c", str(tmp_path / "nope.json")])
        with pytest.raises(ConfigurationError):
            cli.load_instance_config(args)

    def test_invalid_json(self, clean_env, tmp_path):
        config = tmp_path / "bad.json"
        config.write_text("{not json")
        with pytest.raises(ConfigurationError):
            cli.load_instance_config(cli.parse_args(["instance", "-c", str(config)]))

    def test_cmd_instance_bad_config_exit_code(self, clean_env, capsys):
        assert cli.cmd_instance(cli.parse_args(["instance"])) == 2
        assert "Error:" in capsys.readouterr().err


class TestParseArgs:
    def test_run_local_defaults(self):
        args = cli.parse_args(["run-local"])
        assert args.requestors == 1
        assert args.count == 3
        assert args.size == "1KiB"
        assert args.log_level == "INFO"

    def test_sync_server(self):
        args = cli.parse_args(["-l", "DEBUG", "sync-server", "--port", "6000", "--instance-count", "4"])
        assert args.log_level == "DEBUG"
        assert args.port == 6000
        assert args.instance_count == 4

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])
