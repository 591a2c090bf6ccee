import json
from typing import Any


def log_event(component: str, **payload: Any) -> None:
    """Print one structured log line to stdout."""
    try:
        print(json.dumps({"component": component, **payload}, ensure_ascii=False, default=str))
    except Exception:
        print({"component": component, **payload})
