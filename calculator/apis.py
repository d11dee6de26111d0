import logging

from drf_spectacular.utils import OpenApiExample, OpenApiParameter, extend_schema
from drf_spectacular.types import OpenApiTypes
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import (
    BandSerializer,
    HistoryEntrySerializer,
    TaxCalculateSerializer,
    TaxResultSerializer,
    VatCalculateSerializer,
)
from .services.history import HistoryStore
from .services.tax import calculate, errors, load_pit_band_table, reconcile
from .services.tax import config
from .services.upstream import ApiSession, fetch_upstream_result

# prepare logging handler for this file
logger = logging.getLogger(__name__)

SAVE_PARAMETER = OpenApiParameter(
    name='save',
    type=OpenApiTypes.BOOL,
    location=OpenApiParameter.QUERY,
    required=False,
    description='Record the result in the session history - default: true'
)


def get_api_session(request):
    """
    Build the upstream session for this request, forwarding the caller's
    bearer token if it sent one.
    """
    token = None
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        token = header[len('Bearer '):].strip() or None
    return ApiSession(token=token)


class CalculationMixin:
    """Validate, calculate locally, reconcile with upstream, record."""

    def run_calculation(self, request, serializer):
        serializer.is_valid(raise_exception=True)
        tax_input = serializer.to_tax_input()

        try:
            local = calculate(tax_input)
        except errors.ValidationError as e:
            logger.info(f"Rejected {tax_input.regime} input - {e.field}: {e.message}")
            return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)

        upstream = fetch_upstream_result(tax_input, local, session=get_api_session(request))
        result = reconcile(local, upstream)

        if request.query_params.get('save', 'true').lower() != 'false':
            HistoryStore(request.session).add(
                regime=result.regime,
                tax_input=tax_input,
                result=result,
            )

        return Response(TaxResultSerializer(result).data, status=status.HTTP_200_OK)


class TaxCalculateView(CalculationMixin, APIView):
    """
    APIView for income tax calculations.

    Covers PAYE/PIT and Freelancer (progressive bands after deductions)
    and Company Income Tax (flat rate by company size), based on the
    Nigeria Tax Act 2025 (effective January 1, 2026).
    """
    permission_classes = [AllowAny]

    @extend_schema(
        summary="Calculate income tax",
        description=(
            "Calculate PAYE/PIT, Freelancer or Company Income Tax. Returns taxable "
            "income, total and monthly tax, the deductions applied and the band "
            "breakdown. All amounts in Naira (NGN)."
        ),
        request=TaxCalculateSerializer,
        parameters=[SAVE_PARAMETER],
        responses={200: TaxResultSerializer},
        examples=[
            OpenApiExample(
                'PAYE with rent relief and pension',
                value={
                    'tax_type': 'PAYE/PIT',
                    'gross_income': '5000000',
                    'frequency': 'annual',
                    'rent_relief': True,
                    'pension': True,
                },
                request_only=True,
            ),
            OpenApiExample(
                'Medium company',
                value={
                    'tax_type': 'CIT',
                    'revenue': '10000000',
                    'company_size': 'MEDIUM',
                },
                request_only=True,
            ),
        ],
        tags=["Tax"]
    )
    def post(self, request):
        """
        POST /api/tax/calculate/?save=true
        """
        return self.run_calculation(request, TaxCalculateSerializer(data=request.data))


class VatCalculateView(CalculationMixin, APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        summary="Calculate VAT",
        description=(
            "Add VAT to a VAT-exclusive amount or remove it from a VAT-inclusive one. "
            "Domestic and digital services are charged at 7.5%, exports at 0%; "
            "exempt items are outside the VAT base."
        ),
        request=VatCalculateSerializer,
        parameters=[SAVE_PARAMETER],
        responses={200: TaxResultSerializer},
        examples=[
            OpenApiExample(
                'Add VAT',
                value={
                    'transaction_amount': '200000',
                    'calculation_type': 'add',
                    'transaction_type': 'Domestic sale/Purchase',
                },
                request_only=True,
            ),
        ],
        tags=["VAT"]
    )
    def post(self, request):
        return self.run_calculation(request, VatCalculateSerializer(data=request.data))


class TaxBandsView(APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        summary="Progressive PIT bands",
        description="The configured Personal Income Tax bands (annual).",
        responses={200: OpenApiTypes.OBJECT},
        tags=["Tax"]
    )
    def get(self, request):
        bands = load_pit_band_table()
        return Response({
            'tax_year': config.get_setting('TAX_YEAR'),
            'bands': BandSerializer(list(bands), many=True).data,
            'disclaimer': config.get_setting('TAX_DISCLAIMER'),
        })


class HistoryView(APIView):
    """
    Calculation history for the current session, most recent first,
    capped at the configured capacity.
    """
    permission_classes = [AllowAny]

    @extend_schema(
        summary="List calculation history",
        responses={200: HistoryEntrySerializer(many=True)},
        tags=["History"]
    )
    def get(self, request):
        entries = HistoryStore(request.session).read_all()
        return Response(HistoryEntrySerializer(entries, many=True).data)

    @extend_schema(
        summary="Clear calculation history",
        responses={204: None},
        tags=["History"]
    )
    def delete(self, request):
        HistoryStore(request.session).clear()
        return Response(status=status.HTTP_204_NO_CONTENT)
