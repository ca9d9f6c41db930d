from django.apps import AppConfig


class MaterializerConfig(AppConfig):
    name = "materializer"
    verbose_name = "Column materializer"
