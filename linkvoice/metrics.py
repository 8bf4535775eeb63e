from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass
class Metrics:
    """Per-session in-memory metrics; tests assert against these directly."""

    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
            "gauges": dict(self.gauges),
        }


class CompositeMetrics:
    """
    Write-only metrics fanout: per-session Metrics plus the process exporter.
    """

    def __init__(self, *sinks: Any) -> None:
        self._sinks = [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)

    def set(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.set(name, value)

    def get(self, name: str) -> int:
        for s in self._sinks:
            if isinstance(s, Metrics):
                return s.get(name)
        return 0


_MS_BUCKETS = (10, 25, 50, 100, 200, 300, 500, 800, 1000, 2000, 5000, 10000, 30000)


def _prom_name(name: str) -> str:
    # Prometheus metric names cannot contain '.'.
    return "linkvoice_" + (name or "").replace(".", "_").replace("-", "_")


@dataclass(slots=True)
class _Histogram:
    buckets: tuple[int, ...]
    counts: list[int] = field(default_factory=list)
    total: int = 0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * (len(self.buckets) + 1)

    def observe(self, v: int) -> None:
        self.total += int(v)
        self.count += 1
        for i, b in enumerate(self.buckets):
            if v <= b:
                self.counts[i] += 1
                return
        self.counts[-1] += 1

    def cumulative(self) -> Iterable[tuple[str, int]]:
        running = 0
        for i, b in enumerate(self.buckets):
            running += self.counts[i]
            yield (str(b), running)
        yield ("+Inf", running + self.counts[-1])


class PromExporter:
    """
    Process-level Prometheus text exporter. Keeps bucket counts only, so
    memory stays bounded regardless of session count.
    """

    def __init__(self, *, ms_buckets: tuple[int, ...] = _MS_BUCKETS) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._hists: dict[str, _Histogram] = {}
        self._gauges: dict[str, int] = {}
        self._buckets = tuple(int(b) for b in ms_buckets)

    def inc(self, name: str, value: int = 1) -> None:
        key = _prom_name(name)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(value)

    def observe(self, name: str, value: int) -> None:
        key = _prom_name(name)
        with self._lock:
            h = self._hists.get(key)
            if h is None:
                h = self._hists[key] = _Histogram(buckets=self._buckets)
            h.observe(int(value))

    def set(self, name: str, value: int) -> None:
        with self._lock:
            self._gauges[_prom_name(name)] = int(value)

    def add(self, name: str, delta: int) -> None:
        key = _prom_name(name)
        with self._lock:
            self._gauges[key] = self._gauges.get(key, 0) + int(delta)

    def render(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {self._counters[name]}")
            for name in sorted(self._hists):
                h = self._hists[name]
                lines.append(f"# TYPE {name} histogram")
                for le, c in h.cumulative():
                    lines.append(f'{name}_bucket{{le="{le}"}} {c}')
                lines.append(f"{name}_sum {h.total}")
                lines.append(f"{name}_count {h.count}")
            for name in sorted(self._gauges):
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{name} {self._gauges[name]}")
        return "\n".join(lines) + "\n"


GLOBAL_PROM = PromExporter()


VOICE = {
    # Session lifecycle
    "sessions_started_total": "session.started_total",
    "sessions_active": "session.active",
    "session_close_reason_total": "session.close_reason_total",
    "state_transition_total": "session.state_transition_total",
    "invalid_transition_total": "session.invalid_transition_total",
    # Turn-taking
    "response_rejected_active_total": "turn.response_rejected_active_total",
    "turn_first_audio_ms": "turn.first_audio_ms",
    "turns_completed_total": "turn.completed_total",
    "partial_suppressed_total": "turn.partial_suppressed_total",
    # Interruption
    "barge_in_total": "interrupt.barge_in_total",
    "truncate_sent_total": "interrupt.truncate_sent_total",
    "truncate_failed_total": "interrupt.truncate_failed_total",
    "truncate_audio_end_ms": "interrupt.truncate_audio_end_ms",
    # Relay
    "audio_frames_in_total": "relay.audio_frames_in_total",
    "audio_frames_out_total": "relay.audio_frames_out_total",
    "audio_frames_dropped_total": "relay.audio_frames_dropped_total",
    "inbound_out_of_order_total": "relay.inbound_out_of_order_total",
    "marks_sent_total": "relay.marks_sent_total",
    "marks_acked_total": "relay.marks_acked_total",
    # Transport
    "inbound_bad_schema_total": "transport.inbound_bad_schema_total",
    "inbound_queue_dropped_total": "transport.inbound_queue_dropped_total",
    "outbound_queue_dropped_total": "transport.outbound_queue_dropped_total",
    "ws_write_timeout_total": "transport.ws_write_timeout_total",
    "stale_audio_dropped_total": "transport.stale_audio_dropped_total",
    # Stages / provisioning
    "stage_error_total": "stage.error_total",
    "stage_restart_total": "stage.restart_total",
    "provision_attempts_total": "provision.attempts_total",
    "provision_failed_total": "provision.failed_total",
    "tool_calls_total": "tool.calls_total",
    "tool_call_failed_total": "tool.call_failed_total",
    # Persistence / events
    "transcript_records_total": "transcript.records_total",
    "transcript_write_failed_total": "transcript.write_failed_total",
    "events_dropped_total": "events.dropped_total",
}
