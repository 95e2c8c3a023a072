from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_update_scheduled() -> None:
    _inc("updates_scheduled")


def record_stage_transition() -> None:
    _inc("stage_transitions")


def record_update_failure() -> None:
    _inc("update_failures")


def record_install_completed() -> None:
    _inc("installs_completed")


def record_write_conflict() -> None:
    _inc("write_conflicts")


def record_heartbeat() -> None:
    _inc("heartbeats")


def record_heartbeat_degraded() -> None:
    _inc("heartbeats_degraded")


def record_push_failure() -> None:
    _inc("push_failures")


def record_updates_timed_out(count: int) -> None:
    _inc("updates_timed_out", count)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
