"""
Tipjar Lightning Gateway Client

Thin adapter over the payment processor's HTTP API (ZBD-style endpoints):
- Charge creation against a Lightning address
- Charge status lookup

The client keeps no state between calls and never retries; callers decide
what to do with a GatewayError. Every request is bounded by the configured
timeout.
"""

from collections import namedtuple
from datetime import timedelta, timezone as dt_timezone
import logging

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
import requests

from .exceptions import GatewayError

logger = logging.getLogger(__name__)

# The processor counts in millisatoshis; tips are stored in sats.
MSATS_PER_SAT = 1000

Charge = namedtuple('Charge', ['external_id', 'invoice_request', 'invoice_uri', 'expires_at'])
ChargeStatus = namedtuple('ChargeStatus', ['external_id', 'status', 'amount', 'created_at', 'completed_at'])

# Processor status -> tip status
STATUS_MAP = {
    'pending': 'pending',
    'processing': 'pending',
    'completed': 'completed',
    'paid': 'completed',
    'expired': 'expired',
    'error': 'error',
    'failed': 'error',
}


def _parse_timestamp(value):
    if not value:
        return None
    parsed = parse_datetime(value) if isinstance(value, str) else None
    if parsed is not None and timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def _parse_amount(value):
    """Read a msat amount given either as a plain value or as ``{"amount": ...}``."""
    if isinstance(value, dict):
        value = value.get('amount')
    if value in (None, ''):
        return None
    try:
        return int(value) // MSATS_PER_SAT
    except (TypeError, ValueError):
        raise GatewayError(f"Unreadable charge amount: {value!r}")


class LightningGateway:
    """
    Client for the Lightning payment processor.

    Args:
        api_key: Processor API key (defaults to settings.LIGHTNING_GATEWAY_API_KEY)
        base_url: API root (defaults to settings.LIGHTNING_GATEWAY_BASE_URL)
        timeout: Per-request timeout in seconds (defaults to settings.LIGHTNING_GATEWAY_TIMEOUT)
        callback_url: Webhook URL registered with each charge, if any
    """

    def __init__(self, api_key=None, base_url=None, timeout=None, callback_url=None):
        self.api_key = api_key if api_key is not None else settings.LIGHTNING_GATEWAY_API_KEY
        self.base_url = (base_url or settings.LIGHTNING_GATEWAY_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.LIGHTNING_GATEWAY_TIMEOUT
        self.callback_url = callback_url if callback_url is not None else settings.LIGHTNING_CALLBACK_URL

    def _headers(self):
        return {
            'apikey': self.api_key or '',
            'Content-Type': 'application/json',
        }

    def _request(self, method, path, **kwargs):
        """
        Send a request and return the ``data`` member of a successful body.

        Any transport failure, non-2xx response, non-JSON body or falsy
        ``success`` flag raises GatewayError.
        """
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Gateway %s %s failed: %s", method, path, e)
            raise GatewayError(f"Payment processor unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = body.get('message') if isinstance(body, dict) else None
            logger.warning("Gateway %s %s returned %s: %s", method, path, response.status_code, message)
            raise GatewayError(message or f"Payment processor returned HTTP {response.status_code}",
                               status_code=response.status_code)

        if not isinstance(body, dict):
            raise GatewayError("Payment processor returned an unreadable response", status_code=response.status_code)

        if not body.get('success'):
            logger.warning("Gateway %s %s unsuccessful: %s", method, path, body.get('message'))
            raise GatewayError(body.get('message') or "Payment processor rejected the request",
                               status_code=response.status_code)

        data = body.get('data')
        if not isinstance(data, dict):
            raise GatewayError("Payment processor response has no data", status_code=response.status_code)
        return data

    def create_charge(self, amount, destination_address, description, expiry, internal_id=None):
        """
        Ask the processor for an invoice paying ``amount`` sats to a Lightning address.

        Args:
            amount: Positive amount in sats
            destination_address: Lightning address that receives the funds
            description: Text embedded in the invoice
            expiry: timedelta after which the invoice stops being payable
            internal_id: Our reference for the tip, echoed back in webhooks

        Returns:
            Charge: external_id, invoice_request, invoice_uri and expires_at

        Raises:
            GatewayError: On network failure, invalid destination or any unsuccessful response
        """
        if isinstance(expiry, timedelta):
            expires_in = int(expiry.total_seconds())
        else:
            expires_in = int(expiry)

        payload = {
            'lnaddress': destination_address,
            'amount': str(amount * MSATS_PER_SAT),
            'description': description,
            'expiresIn': expires_in,
        }
        if internal_id:
            payload['internalId'] = str(internal_id)
        if self.callback_url:
            payload['callbackUrl'] = self.callback_url

        data = self._request('POST', '/ln-address/fetch-charge', json=payload)

        invoice = data.get('invoice') if isinstance(data.get('invoice'), dict) else data
        external_id = data.get('id') or invoice.get('id')
        invoice_request = invoice.get('request')
        if not external_id or not invoice_request:
            raise GatewayError("Charge response is missing the charge id or invoice")

        expires_at = _parse_timestamp(data.get('expiresAt') or data.get('expires_at'))
        if expires_at is None:
            expires_at = timezone.now() + timedelta(seconds=expires_in)

        logger.info("Created charge %s for %s sats to %s", external_id, amount, destination_address)
        return Charge(
            external_id=str(external_id),
            invoice_request=invoice_request,
            invoice_uri=invoice.get('uri') or f"lightning:{invoice_request}",
            expires_at=expires_at,
        )

    def fetch_charge_status(self, external_id):
        """
        Look up the current state of a charge.

        Returns:
            ChargeStatus: status is one of pending, completed, expired or error

        Raises:
            GatewayError: On network failure, unknown charge id or an unrecognised status
        """
        data = self._request('GET', f"/charges/{external_id}")

        raw_status = (data.get('status') or '').lower()
        status = STATUS_MAP.get(raw_status)
        if status is None:
            raise GatewayError(f"Unknown charge status {raw_status!r} for {external_id}")

        return ChargeStatus(
            external_id=str(data.get('id') or external_id),
            status=status,
            amount=_parse_amount(data.get('amount')),
            created_at=_parse_timestamp(data.get('createdAt') or data.get('created_at')),
            completed_at=_parse_timestamp(data.get('confirmedAt') or data.get('confirmed_at')),
        )


def get_gateway():
    """Return a gateway client built from settings."""
    return LightningGateway()
