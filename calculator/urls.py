from django.urls import path

from .apis import HistoryView, TaxBandsView, TaxCalculateView, VatCalculateView

urlpatterns = [
    path('tax/calculate/', TaxCalculateView.as_view(), name='tax-calculate'),
    path('tax/bands/', TaxBandsView.as_view(), name='tax-bands'),
    path('vat/calculate/', VatCalculateView.as_view(), name='vat-calculate'),
    path('history/', HistoryView.as_view(), name='history'),
]
