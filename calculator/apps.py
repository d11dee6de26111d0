import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class CalculatorConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'calculator'
    verbose_name = 'Tax Calculator'

    def ready(self):
        from . import signals  # noqa: F401
        from .services.tax import ConfigurationError, build_regimes

        # fail fast on a bad band or rate table
        try:
            build_regimes()
        except ConfigurationError as e:
            logger.error(f"Invalid tax configuration: {e.message}")
            raise
