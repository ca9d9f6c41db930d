import os
import sys

from materializer.settings.utils import get_from_env, str_to_bool

# Build paths inside the project like this: os.path.join(BASE_DIR, ...)
BASE_DIR: str = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEBUG: bool = get_from_env("DEBUG", False, type_cast=str_to_bool)
TEST = get_from_env(
    "TEST",
    "test" in sys.argv or sys.argv[0].endswith("pytest") or "pytest" in sys.modules,
    type_cast=str_to_bool,
)
