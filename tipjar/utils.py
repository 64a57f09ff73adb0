"""
Tipjar Utilities

Helpers shared by the views and the payment flow:
- HMAC-SHA256 signing and verification of webhook bodies
- Parsing of the inbound webhook payload shapes
"""

import hashlib
import hmac
import logging

from .exceptions import WebhookSignatureError
from .gateway import MSATS_PER_SAT, STATUS_MAP

logger = logging.getLogger(__name__)


def sign_webhook_body(raw_body, secret):
    """Return the hex HMAC-SHA256 digest of ``raw_body`` under ``secret``."""
    if isinstance(secret, str):
        secret = secret.encode()
    return hmac.new(secret, raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body, signature, secret):
    """
    Check a webhook signature header against the raw request body.

    The header may carry the bare hex digest or a ``sha256=`` prefixed one.
    A missing secret rejects every request.

    Raises:
        WebhookSignatureError: If the secret or signature is missing, or they don't match
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")

    provided = signature.strip()
    if provided.lower().startswith('sha256='):
        provided = provided[len('sha256='):]

    expected = sign_webhook_body(raw_body, secret)
    # Header values may hold any characters; compare as bytes.
    if not hmac.compare_digest(expected.encode(), provided.lower().encode('utf-8', 'replace')):
        raise WebhookSignatureError("Webhook signature mismatch")


def parse_webhook_payload(payload):
    """
    Pull the charge reference and status out of a webhook body.

    Two shapes are accepted::

        {"status": "completed", "data": {"id": "<charge id>", ...}}
        {"status": "completed", "internalId": "<tip reference>"}

    The processor's status word is mapped onto a tip status the same way
    status lookups are; an unrecognised word becomes None.

    Returns:
        dict: external_id, internal_id, status and amount in sats (any may be None)
    """
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")

    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    status = payload.get('status') or data.get('status')
    amount = data.get('amount', payload.get('amount'))
    if isinstance(amount, dict):
        amount = amount.get('amount')
    try:
        amount = int(amount) // MSATS_PER_SAT if amount not in (None, '') else None
    except (TypeError, ValueError):
        amount = None

    external_id = data.get('id')
    internal_id = payload.get('internalId') or data.get('internalId')
    if not external_id and not internal_id:
        raise ValueError("Webhook payload has neither data.id nor internalId")

    raw_status = str(status).lower() if status else ''
    mapped_status = STATUS_MAP.get(raw_status)
    if mapped_status is None:
        logger.warning("Webhook for %s carries unrecognised status %r", external_id or internal_id, status)

    return {
        'external_id': str(external_id) if external_id else None,
        'internal_id': str(internal_id) if internal_id else None,
        'status': mapped_status,
        'amount': amount,
    }
