DEFAULT_CLIENT_ID = "client-demo"


def normalize_client_id(value: str | None) -> str | None:
    client_id = str(value or "").strip()
    return client_id or None
