"""
Django settings for the column materializer.

Everything is configured through environment variables, see the modules below.
"""

from materializer.settings.base_variables import *
from materializer.settings.data_stores import *
from materializer.settings.logs import *
from materializer.settings.materialized_columns import *
from materializer.settings.utils import get_from_env

SECRET_KEY: str = get_from_env("SECRET_KEY", "<randomly generated secret key>")

INSTALLED_APPS = [
    "materializer.apps.MaterializerConfig",
]

USE_TZ = True
TIME_ZONE = "UTC"
