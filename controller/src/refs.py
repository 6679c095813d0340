from __future__ import annotations

import re
from typing import Any

from controller.src.reftracker import RefKey

MIN_SYNC_PERIOD_SECONDS = 30

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def app_resource_refs(app: dict[str, Any]) -> set[RefKey]:
    """Collect the Secrets and ConfigMaps an App manifest references.

    Refs always resolve in the App's own namespace.  ``spec.fetch`` and
    ``spec.template`` are searched recursively for ``secretRef`` and
    ``configMapRef`` blocks, which covers every fetch and template source
    (``inline.pathsFrom``, ``git``, ``helmChart.repository``,
    ``ytt.valuesFrom``, ``helmTemplate.valuesFrom`` and so on).
    """
    metadata = app.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    spec = app.get("spec") or {}
    refs: set[RefKey] = set()

    cluster = spec.get("cluster") or {}
    kubeconfig_name = _ref_name(cluster.get("kubeconfigSecretRef"))
    if kubeconfig_name:
        refs.add(RefKey.secret(kubeconfig_name, namespace))

    for section in ("fetch", "template"):
        _collect_refs(spec.get(section), namespace, refs)

    return refs


def _collect_refs(node: Any, namespace: str, refs: set[RefKey]) -> None:
    if isinstance(node, list):
        for item in node:
            _collect_refs(item, namespace, refs)
        return
    if not isinstance(node, dict):
        return

    for key, value in node.items():
        if key == "secretRef":
            name = _ref_name(value)
            if name:
                refs.add(RefKey.secret(name, namespace))
        elif key == "configMapRef":
            name = _ref_name(value)
            if name:
                refs.add(RefKey.config_map(name, namespace))
        else:
            _collect_refs(value, namespace, refs)


def _ref_name(ref: Any) -> str | None:
    if not isinstance(ref, dict):
        return None
    name = ref.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def parse_duration_seconds(value: str) -> float:
    """Parse a Go-style duration string such as ``30s``, ``1m30s`` or ``1.5h``.

    Raises ``ValueError`` for anything that is not a sequence of
    ``<number><unit>`` parts.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def sync_period_seconds(app: dict[str, Any], default: float) -> float:
    """Return how long to wait before the next periodic reconcile of ``app``.

    Uses ``spec.syncPeriod`` when it parses, never going below
    ``MIN_SYNC_PERIOD_SECONDS``; otherwise falls back to ``default``, which
    is held to the same floor.
    """
    raw = (app.get("spec") or {}).get("syncPeriod")
    if not isinstance(raw, str):
        return max(default, MIN_SYNC_PERIOD_SECONDS)
    try:
        period = parse_duration_seconds(raw)
    except ValueError:
        return max(default, MIN_SYNC_PERIOD_SECONDS)
    return max(period, MIN_SYNC_PERIOD_SECONDS)
