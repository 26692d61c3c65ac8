from __future__ import annotations

import json
from typing import Any, Iterable


class ClientScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without client (tenant) scope."""


class BaseRepository:
    def __init__(self, *, client_id: str | None = None) -> None:
        scope = str(client_id or "").strip()
        if not scope:
            raise ClientScopeRequiredError("client_id is required for repository access")
        self.client_id = scope

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]


def row_to_dict(row) -> dict | None:
    return dict(row) if row else None


def inserted_id(cursor) -> int:
    row = cursor.fetchone()
    return int(row["id"] if isinstance(row, dict) else row[0])


def dumps_json(value: Any) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)


def loads_json(raw: Any, default: Any) -> Any:
    if raw in (None, ""):
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default
