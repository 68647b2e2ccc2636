from __future__ import annotations

import copy
from typing import Dict

DEFAULT_SCORER_CONFIG: Dict[str, object] = {
    "enabled": [
        "max_pain",
        "iv_skew",
        "sweep",
        "rsi_extreme",
    ],
    "points": {
        "max_pain": 30,
        "iv_skew": 25,
        "sweep": 30,
        "rsi_extreme": 15,
    },
    "thresholds": {
        "max_pain_proximity": 0.007,
        "iv_skew_ratio": 0.92,
        "sweep_volume_oi_ratio": 0.5,
        "rsi_oversold": 30.0,
        "rsi_overbought": 70.0,
        "rsi_max_dte": 3,
    },
    "min_composite": 85,
    "min_active_layers": 2,
    # Trades flagged by the sweep detector also earn the sweep layer.
    "detected_sweeps": True,
}


def merge_config(overrides: Dict[str, object] | None) -> Dict[str, object]:
    merged = copy.deepcopy(DEFAULT_SCORER_CONFIG)
    if not overrides:
        return merged
    if "enabled" in overrides:
        merged["enabled"] = list(overrides["enabled"])
    for section in ("points", "thresholds"):
        if section in overrides:
            merged[section] = {**merged[section], **dict(overrides[section])}
    for key, value in overrides.items():
        if key not in {"enabled", "points", "thresholds"}:
            merged[key] = value
    return merged


__all__ = ["DEFAULT_SCORER_CONFIG", "merge_config"]
