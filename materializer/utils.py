from typing import Any


def str_to_bool(value: Any) -> bool:
    """Return whether the provided string (or any value really) represents true. Otherwise, false."""
    if not value:
        return False
    return str(value).lower() in ("y", "yes", "t", "true", "on", "1")
