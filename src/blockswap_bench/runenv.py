"""Run environment: who this instance is, its parameters, and its event log.

An instance learns its identity from ``BENCH_*`` environment variables
(set by the launcher) or from a JSON config file. Parameters arrive as
strings and are parsed on demand by the typed accessors; malformed values
raise :class:`ConfigurationError`.

Environment variables:
    BENCH_TEST_CASE:        Test case name (default: speed-test)
    BENCH_GROUP_ID:         Role label (providers / requestors)
    BENCH_INSTANCE_COUNT:   Fleet size, used as the barrier target
    BENCH_INSTANCE_SEQ:     Ordinal of this instance (diagnostic only)
    BENCH_RUN_ID:           Run identifier scoping sync state
    BENCH_INSTANCE_PARAMS:  Test parameters as ``key=value|key=value``
    BENCH_SYNC_URL:         Sync service URL (empty: in-process service)
    BENCH_OUTPUTS_DIR:      Directory for events and results
    BENCH_LISTEN_HOST:      Interface the host binds to
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from blockswap_bench.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "BENCH_"

SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000**2,
    "mib": 1024**2,
    "gb": 1000**3,
    "gib": 1024**3,
}

DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def parse_size(text: str) -> int:
    """Parse ``"1024"``, ``"1KiB"``, ``"2 MB"`` into a byte count."""
    match = _SIZE_RE.match(str(text))
    if not match:
        raise ConfigurationError(f"invalid size: {text!r}")
    number, unit = match.groups()
    multiplier = SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ConfigurationError(f"unknown size unit {unit!r} in {text!r}")
    return int(float(number) * multiplier)


def parse_duration(text: str) -> float:
    """Parse Go-style durations (``"100ms"``, ``"1m30s"``, ``"0"``) into seconds."""
    text = str(text).strip()
    if text in ("0", ""):
        return 0.0
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigurationError(f"invalid duration: {text!r}")
    return total


def parse_params(text: str) -> dict[str, str]:
    """Parse ``key=value|key=value`` into a dict."""
    params: dict[str, str] = {}
    for item in filter(None, (p.strip() for p in text.split("|"))):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"malformed parameter {item!r}, expected key=value")
        params[key.strip()] = value.strip()
    return params


def format_params(params: Mapping[str, Any]) -> str:
    return "|".join(f"{k}={v}" for k, v in params.items())


ENV_KEYS = {
    "GROUP_ID": "group_id",
    "INSTANCE_COUNT": "instance_count",
    "INSTANCE_SEQ": "seq",
    "RUN_ID": "run_id",
    "TEST_CASE": "test_case",
    "INSTANCE_PARAMS": "params",
    "SYNC_URL": "sync_url",
    "OUTPUTS_DIR": "outputs_dir",
    "LISTEN_HOST": "listen_host",
}


def config_from_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect the ``BENCH_*`` variables that are set into a config mapping."""
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    for env_key, key in ENV_KEYS.items():
        value = environ.get(ENV_PREFIX + env_key)
        if value is not None:
            raw[key] = parse_params(value) if key == "params" else value
    return raw


class EventSink:
    """Append-only JSON-lines event recorder.

    Every event is also logged, so an instance without an outputs
    directory still leaves a trace.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self.events: list[dict[str, Any]] = []
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        event = {"ts": time.time(), "type": event_type, **fields}
        self.events.append(event)
        if self.path:
            with open(self.path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")
        return event


@dataclass(frozen=True)
class RunEnv:
    """Immutable description of one instance in a run."""

    group_id: str
    instance_count: int
    seq: int = 0
    run_id: str = "local"
    test_case: str = "speed-test"
    params: dict[str, str] = field(default_factory=dict)
    sync_url: str = ""
    outputs_dir: str = ""
    listen_host: str = "0.0.0.0"
    sink: EventSink = field(default_factory=EventSink, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.instance_count < 1:
            raise ConfigurationError(f"instance_count must be >= 1, got {self.instance_count}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RunEnv:
        """Build a RunEnv from ``BENCH_*`` variables."""
        return cls.from_config(config_from_env(environ))

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> RunEnv:
        """Build a RunEnv from a config mapping (JSON file or env)."""
        try:
            instance_count = int(raw["instance_count"])
            seq = int(raw.get("seq", 0))
        except KeyError as e:
            raise ConfigurationError(f"missing config key {e.args[0]!r}") from None
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid instance count or seq: {e}") from None
        if "group_id" not in raw:
            raise ConfigurationError("missing config key 'group_id'")

        params = raw.get("params", {})
        if isinstance(params, str):
            params = parse_params(params)
        outputs_dir = str(raw.get("outputs_dir", ""))
        sink_path = Path(outputs_dir) / "events.jsonl" if outputs_dir else None

        return cls(
            group_id=str(raw["group_id"]),
            instance_count=instance_count,
            seq=seq,
            run_id=str(raw.get("run_id", "local")),
            test_case=str(raw.get("test_case", "speed-test")),
            params={str(k): str(v) for k, v in params.items()},
            sync_url=str(raw.get("sync_url", "")),
            outputs_dir=outputs_dir,
            listen_host=str(raw.get("listen_host", "0.0.0.0")),
            sink=EventSink(sink_path),
        )

    # ── Parameters ───────────────────────────────────────────────

    def _raw(self, name: str, default: Any) -> str:
        if name in self.params:
            return self.params[name]
        if default is None:
            raise ConfigurationError(f"missing parameter {name!r}")
        return str(default)

    def string_param(self, name: str, default: str | None = None) -> str:
        return self._raw(name, default)

    def int_param(self, name: str, default: int | None = None) -> int:
        raw = self._raw(name, default)
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"parameter {name!r} is not an integer: {raw!r}") from None

    def bool_param(self, name: str, default: bool | None = None) -> bool:
        raw = self._raw(name, default).strip().lower()
        if raw in TRUE_VALUES:
            return True
        if raw in FALSE_VALUES:
            return False
        raise ConfigurationError(f"parameter {name!r} is not a boolean: {raw!r}")

    def size_param(self, name: str, default: int | str | None = None) -> int:
        return parse_size(self._raw(name, default))

    def duration_param(self, name: str, default: str | None = None) -> float:
        return parse_duration(self._raw(name, default))

    def string_array_param(self, name: str, default: list[str] | None = None) -> list[str]:
        if name not in self.params:
            if default is None:
                raise ConfigurationError(f"missing parameter {name!r}")
            return list(default)
        raw = self.params[name].strip()
        if raw.startswith("["):
            try:
                values = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"parameter {name!r} is not a JSON list: {e}") from None
            return [str(v) for v in values]
        return [v.strip() for v in raw.split(",") if v.strip()]

    def size_array_param(self, name: str, default: list[str] | None = None) -> list[int]:
        return [parse_size(v) for v in self.string_array_param(name, default)]

    # ── Diagnostic sink ──────────────────────────────────────────

    def record_message(self, msg: str, *args: Any) -> None:
        text = msg % args if args else msg
        logger.info("[%s#%d] %s", self.group_id, self.seq, text)
        self.sink.emit("message", message=text)

    def record_metric(self, name: str, value: float, unit: str = "") -> None:
        logger.info("[%s#%d] metric %s=%s%s", self.group_id, self.seq, name, value, unit)
        self.sink.emit("metric", name=name, value=value, unit=unit)

    def record_success(self) -> None:
        logger.info("[%s#%d] run succeeded", self.group_id, self.seq)
        self.sink.emit("outcome", outcome="success")

    def record_failure(self, error: BaseException | str) -> None:
        logger.error("[%s#%d] run failed: %s", self.group_id, self.seq, error)
        self.sink.emit("outcome", outcome="failure", error=str(error))

    def record_crash(self, error: BaseException) -> None:
        logger.error("[%s#%d] run crashed: %r", self.group_id, self.seq, error)
        self.sink.emit(
            "outcome",
            outcome="crash",
            error=repr(error),
            stacktrace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        )
