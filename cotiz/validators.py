from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import List


_NON_DIGITS = re.compile(r"\D+")
_CNPJ_WEIGHTS_FIRST = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_SECOND = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    # Segundos inteiros: as colunas TEXT sao comparadas lexicograficamente no SQL.
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_iso() -> str:
    return format_datetime(utc_now())


def parse_datetime(raw_value: str | datetime | None) -> datetime | None:
    if raw_value is None:
        return None
    if isinstance(raw_value, datetime):
        parsed = raw_value
    else:
        value = str(raw_value).strip()
        if not value:
            return None
        parsed = None
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d", "%d/%m/%Y %H:%M", "%d/%m/%Y"):
                try:
                    parsed = datetime.strptime(value, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def days_since(raw_value: str | datetime | None, now: datetime | None = None) -> int | None:
    dt = parse_datetime(raw_value)
    if not dt:
        return None
    delta = (now or utc_now()) - dt
    return max(0, int(delta.total_seconds() // 86_400))


def parse_int(value: str | None, default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, min(parsed, max_value))


def parse_optional_int(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def normalize_int_list(value) -> List[int]:
    if not isinstance(value, (list, tuple)):
        return []
    result: List[int] = []
    for item in value:
        parsed = parse_optional_int(item)
        if parsed is None:
            continue
        result.append(parsed)
    # Preserva ordem e remove duplicidade.
    return list(dict.fromkeys(result))


def _finite(value: float) -> float | None:
    # NaN e infinito nao sao valores monetarios nem quantidades validas.
    return value if math.isfinite(value) else None


def parse_optional_float(value) -> float | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(float(value))
    text = str(value).strip().replace("R$", "").strip()
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return _finite(float(text))
    except ValueError:
        return None


def clean_text(value, max_length: int | None = None) -> str | None:
    text = str(value or "").strip()
    if not text:
        return None
    if max_length is not None:
        text = text[:max_length]
    return text


def only_digits(value: str | None) -> str:
    return _NON_DIGITS.sub("", str(value or ""))


def _cnpj_check_digit(digits: str, weights: tuple[int, ...]) -> int:
    total = sum(int(digit) * weight for digit, weight in zip(digits, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str | None) -> bool:
    digits = only_digits(value)
    if len(digits) != 14:
        return False
    if digits == digits[0] * 14:
        return False
    first = _cnpj_check_digit(digits[:12], _CNPJ_WEIGHTS_FIRST)
    second = _cnpj_check_digit(digits[:12] + str(first), _CNPJ_WEIGHTS_SECOND)
    return digits[12:] == f"{first}{second}"


def normalize_phone(value: str | None) -> str | None:
    """Normaliza telefone para digitos com DDI 55 (formato aceito pela Evolution API)."""
    digits = only_digits(value)
    if not digits:
        return None
    if digits.startswith("0"):
        digits = digits.lstrip("0")
    if not digits.startswith("55") or len(digits) <= 11:
        digits = f"55{digits}"
    if len(digits) < 12:
        return None
    return digits


def is_valid_email(value: str | None) -> bool:
    text = str(value or "").strip()
    return bool(re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", text))
