from django.core.signals import setting_changed
from django.dispatch import receiver

from .services.tax import reset_regimes


@receiver(setting_changed)
def taxlator_settings_changed(sender, setting, **kwargs):
    """
    Rebuild the cached regimes when TAXLATOR is overridden (tests use
    override_settings).
    """
    if setting == 'TAXLATOR':
        reset_regimes()
