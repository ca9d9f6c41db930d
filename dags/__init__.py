import os

import django

# setup the materializer Django project, the jobs rely on its ORM and cache
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "materializer.settings")

django.setup()
