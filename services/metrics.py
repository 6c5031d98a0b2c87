from __future__ import annotations

from threading import Lock
from typing import Tuple


_lock = Lock()
_counters: dict[str, dict[Tuple[Tuple[str, str], ...], int]] = {}


def _inc(name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        series = _counters.setdefault(name, {})
        series[key] = int(series.get(key, 0)) + int(value)


def get_counter(name: str, labels: dict[str, str] | None = None) -> int:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        return int(_counters.get(name, {}).get(key, 0))


def reset_counters() -> None:
    with _lock:
        _counters.clear()


def increment_http_requests(route: str, status: int) -> None:
    _inc("http_requests_total", {"route": route, "status": str(status)})


def increment_transition(entity: str, to_status: str) -> None:
    _inc("billing_transitions_total", {"entity": entity, "to": to_status})


def increment_activation(result: str) -> None:
    _inc("billing_activations_total", {"result": result})


def increment_grant(grant_type: str, result: str) -> None:
    _inc("billing_grants_total", {"grant_type": grant_type, "result": result})


def increment_lock_contention(outcome: str) -> None:
    _inc("billing_lock_contention_total", {"outcome": outcome})


def increment_unique_code(fallback: bool) -> None:
    _inc("billing_unique_codes_total", {"fallback": str(fallback).lower()})


def increment_webhook_event(signature_valid: bool, applied: bool) -> None:
    _inc(
        "webhook_events_total",
        {
            "signature_valid": str(signature_valid).lower(),
            "applied": str(applied).lower(),
        },
    )


def increment_idempotency_replay(route: str) -> None:
    _inc("idempotency_replays_total", {"route": route})


def increment_notification(event: str, result: str) -> None:
    _inc("notifications_total", {"event": event, "result": result})


def render_prometheus() -> str:
    lines: list[str] = []
    with _lock:
        for name, series in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(series.items()):
                if labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in labels)
                    lines.append(f"{name}{{{label_str}}} {value}")
                else:
                    lines.append(f"{name} {value}")
    return "\n".join(lines) + ("\n" if lines else "")
