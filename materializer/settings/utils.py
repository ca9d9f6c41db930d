import os
import json
from collections.abc import Callable
from typing import Any, Optional

from django.core.exceptions import ImproperlyConfigured

from materializer.utils import str_to_bool

__all__ = ["get_from_env", "get_json", "str_to_bool"]


def get_from_env(
    key: str,
    default: Any = None,
    *,
    optional: bool = False,
    type_cast: Optional[Callable] = None,
) -> Any:
    value = os.getenv(key)
    if value is None or value == "":
        if optional:
            return None
        if default is not None:
            return default
        else:
            raise ImproperlyConfigured(f'The environment variable "{key}" is required to run the column materializer!')
    if type_cast is not None:
        return type_cast(value)
    return value


def get_json(key: str, default: Any) -> Any:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ImproperlyConfigured(f'The environment variable "{key}" must be valid JSON: {e}')
