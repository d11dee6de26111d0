"""
Client for the remote Taxlator calculation service.

Credentials travel in an explicit ApiSession handed to the client; there
is no module-level token. Failures of any kind surface as
UpstreamUnavailable so callers can fall back to the local result.
"""
import logging
from decimal import Decimal

import requests

from .tax import config
from .tax.deductions import (
    BUSINESS_EXPENSES,
    HEALTH_INSURANCE,
    NHF,
    PENSION,
    RENT_RELIEF,
)
from .tax.errors import UpstreamUnavailable
from .tax.money import quantize_money
from .tax.regimes import Regime, TaxResult

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "tax_calculate": "api/tax/calculate",
    "vat_calculate": "api/vat/calculate",
}


class ApiSession:
    """Base URL, optional bearer token and a pooled requests.Session."""

    def __init__(self, base_url=None, token=None, timeout=None, http=None):
        self.base_url = (base_url or config.get_setting('UPSTREAM_BASE_URL')).rstrip('/')
        self.token = token
        self.timeout = timeout or config.get_setting('UPSTREAM_TIMEOUT')
        self.http = http or requests.Session()

    def get_headers(self):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def url(self, endpoint):
        return f"{self.base_url}/{endpoint}"


class TaxlatorApiClient:

    def __init__(self, session: ApiSession):
        self.session = session

    def _post(self, endpoint, payload):
        url = self.session.url(endpoint)
        try:
            response = self.session.http.post(
                url,
                json=payload,
                headers=self.session.get_headers(),
                timeout=self.session.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable(f"Response from {url} is not JSON") from e

        if not isinstance(body, dict) or body.get('success') is not True:
            message = body.get('message') or body.get('error') if isinstance(body, dict) else None
            raise UpstreamUnavailable(message or f"Calculation at {url} was not successful")

        data = body.get('data')
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Response from {url} carries no result data")
        return data

    def calculate_tax(self, payload):
        return self._post(ENDPOINTS["tax_calculate"], payload)

    def calculate_vat(self, payload):
        return self._post(ENDPOINTS["vat_calculate"], payload)

    def fetch_result(self, tax_input, local_result: TaxResult):
        """Send the request matching tax_input to the right endpoint."""
        payload = build_upstream_payload(tax_input, local_result)
        if tax_input.regime == Regime.VAT:
            return self.calculate_vat(payload)
        return self.calculate_tax(payload)


def _number(value: Decimal):
    # the remote service validates with Joi and expects JSON numbers
    value = quantize_money(value)
    return int(value) if value == value.to_integral_value() else float(value)


def build_upstream_payload(tax_input, local_result: TaxResult):
    """
    Translate a TaxInput into the request body the remote service expects.

    PAYE/PIT deductions are sent as amounts (rent relief separately, the
    rest summed into otherDeductions), so they are taken from the local
    result that was computed for the same input.
    """
    applied = local_result.deductions_applied
    gross = local_result.gross

    if tax_input.regime == Regime.PAYE_PIT:
        other = sum(
            (applied.get(name, Decimal("0")) for name in (PENSION, NHF, HEALTH_INSURANCE)),
            Decimal("0"),
        )
        return {
            "taxType": Regime.PAYE_PIT.value,
            "grossIncome": _number(gross),
            "frequency": "annual",
            "rentRelief": _number(applied.get(RENT_RELIEF, Decimal("0"))),
            "otherDeductions": _number(other),
        }

    if tax_input.regime == Regime.FREELANCER:
        return {
            "taxType": Regime.FREELANCER.value,
            "grossIncome": _number(gross),
            "frequency": "annual",
            "pension": _number(applied.get(PENSION, Decimal("0"))),
            "expenses": _number(applied.get(BUSINESS_EXPENSES, Decimal("0"))),
        }

    if tax_input.regime == Regime.CIT:
        return {
            "taxType": Regime.CIT.value,
            "revenue": _number(gross),
            "companySize": str(tax_input.company_size),
            "expenses": _number(applied.get(BUSINESS_EXPENSES, Decimal("0"))),
            "frequency": "annual",
        }

    return {
        "transactionAmount": _number(gross),
        "calculationType": str(tax_input.calculation_type or "add"),
        "transactionType": str(tax_input.transaction_type),
    }


def fetch_upstream_result(tax_input, local_result, session=None):
    """
    Ask the remote service for its result, or None when it is disabled or
    unavailable.
    """
    if not config.get_setting('UPSTREAM_ENABLED'):
        return None

    client = TaxlatorApiClient(session or ApiSession())
    try:
        return client.fetch_result(tax_input, local_result)
    except UpstreamUnavailable as e:
        logger.warning(f"Upstream unavailable for {tax_input.regime}: {e.message}")
        return None
