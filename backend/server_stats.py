import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Docker reports StartedAt with nanosecond precision, e.g. 2024-01-01T10:00:00.123456789Z
_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass
class CpuSample:
    total_usage: int = 0
    system_usage: int = 0

    @classmethod
    def from_stats(cls, section: dict | None) -> "CpuSample":
        section = section or {}
        usage = section.get("cpu_usage", {}) or {}
        return cls(
            total_usage=int(usage.get("total_usage", 0) or 0),
            system_usage=int(section.get("system_cpu_usage", 0) or 0),
        )


@dataclass
class ContainerStats:
    cpu: float
    memory: int
    memory_limit: int
    uptime: int
    storage: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["memoryLimit"] = data.pop("memory_limit")
        return data


def cpu_percent(current: CpuSample, previous: CpuSample, cores: int) -> float:
    cpu_delta = current.total_usage - previous.total_usage
    system_delta = current.system_usage - previous.system_usage
    if cpu_delta > 0 and system_delta > 0:
        return (cpu_delta / system_delta) * cores * 100.0
    return 0.0


def core_count(cpu_stats: dict | None) -> int:
    """Number of cores the CPU delta is spread over.

    cgroup v2 hosts leave ``percpu_usage`` out, so fall back to ``online_cpus``.
    """
    cpu_stats = cpu_stats or {}
    per_cpu = (cpu_stats.get("cpu_usage", {}) or {}).get("percpu_usage") or []
    if per_cpu:
        return len(per_cpu)
    return int(cpu_stats.get("online_cpus") or 1)


def parse_started_at(value: str) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat only takes microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def uptime_seconds(running: bool, started_at: str, now: Optional[datetime] = None) -> int:
    if not running:
        return 0
    started = parse_started_at(started_at)
    if started is None:
        logger.debug(f"Could not parse StartedAt {started_at!r}")
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, int((now - started).total_seconds()))


def compute_stats(snapshot: dict, inspect_attrs: dict, now: Optional[datetime] = None) -> ContainerStats:
    """Build a ContainerStats from a one-shot ``stats`` payload and ``inspect`` attrs.

    Memory is passed through as reported (bytes). Storage is not measured.
    """
    cpu_stats = snapshot.get("cpu_stats", {}) or {}
    current = CpuSample.from_stats(cpu_stats)
    previous = CpuSample.from_stats(snapshot.get("precpu_stats"))
    memory = snapshot.get("memory_stats", {}) or {}
    state = inspect_attrs.get("State", {}) or {}

    return ContainerStats(
        cpu=cpu_percent(current, previous, core_count(cpu_stats)),
        memory=int(memory.get("usage", 0) or 0),
        memory_limit=int(memory.get("limit", 0) or 0),
        uptime=uptime_seconds(bool(state.get("Running")), state.get("StartedAt", ""), now=now),
        storage=0,
    )
