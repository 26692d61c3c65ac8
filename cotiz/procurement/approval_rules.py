from __future__ import annotations

import json
import math
from typing import Iterable, List

from cotiz.errors import ValidationError


def parse_approvers(raw) -> List[int]:
    if raw in (None, ""):
        return []
    values = raw
    if isinstance(raw, str):
        try:
            values = json.loads(raw)
        except ValueError:
            values = [part.strip() for part in raw.split(",")]
    if not isinstance(values, (list, tuple)):
        return []
    approvers: List[int] = []
    for item in values:
        try:
            approvers.append(int(item))
        except (TypeError, ValueError):
            continue
    return list(dict.fromkeys(approvers))


def _as_float(value) -> float | None:
    if value in (None, ""):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def level_matches(level: dict, amount: float) -> bool:
    if not bool(level.get("active", True)):
        return False
    threshold = _as_float(level.get("amount_threshold")) or 0.0
    maximum = _as_float(level.get("max_amount_threshold"))
    if amount < threshold:
        return False
    return maximum is None or amount <= maximum


def level_for_amount(levels: Iterable[dict], amount: float) -> dict | None:
    """Escolhe o nivel aplicavel ao valor; None significa aprovacao automatica.

    Entre os niveis ativos que cobrem o valor vence o menor order_level; em
    empate, o de maior amount_threshold.
    """
    value = float(amount or 0)
    candidates = [level for level in levels if level_matches(level, value)]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda level: (int(level.get("order_level") or 0), -(_as_float(level.get("amount_threshold")) or 0.0)),
    )


def validate_level(
    *,
    name: str | None,
    amount_threshold,
    max_amount_threshold,
    approvers: List[int],
) -> tuple[float, float | None]:
    if not str(name or "").strip():
        raise ValidationError(code="required_fields_missing", payload={"fields": ["name"]})
    threshold = _as_float(amount_threshold)
    if threshold is None or threshold < 0:
        raise ValidationError(code="threshold_invalid")
    maximum = _as_float(max_amount_threshold)
    if maximum is None and max_amount_threshold not in (None, ""):
        raise ValidationError(code="threshold_invalid")
    if maximum is not None and maximum < threshold:
        raise ValidationError(code="threshold_invalid")
    if not approvers:
        raise ValidationError(code="approvers_required")
    return threshold, maximum
