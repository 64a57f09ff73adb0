"""
Tipjar Payment Flow

Coordinates the life of a tip:

1. ``initiate_tip`` validates the request, asks the processor for a charge
   and records a pending Tip carrying the charge id.
2. Completion is observed either by the processor's webhook or by the
   supporter's browser polling ``check_status``. Both routes end in
   ``reconcile``, the only function that changes a tip's status.
3. ``reconcile`` is idempotent: replays and webhook/poll races leave the tip
   and the page totals exactly as a single delivery would.
"""

from datetime import timedelta
import logging
import time
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError

from .exceptions import GatewayError, TipConflict, TipNotFound, TipPersistenceError
from .gateway import get_gateway
from .models import Tip
from .validators import validate_lightning_address, validate_supporter_name, validate_tip_amount

logger = logging.getLogger(__name__)


def initiate_tip(page, amount, supporter_name, destination_address=None, message='', gateway=None):
    """
    Create a Lightning charge for a tip and record it as pending.

    Args:
        page: TippingPage receiving the tip
        amount: Tip amount in sats
        supporter_name: Name shown once the tip completes
        destination_address: Lightning address the supporter saw; must match the page's
        message: Optional note from the supporter
        gateway: Gateway client (defaults to one built from settings)

    Returns:
        Tip: The stored pending tip, with invoice fields filled in

    Raises:
        ValidationError: Bad amount, name or address, or page not accepting tips
        GatewayError: Charge creation failed; nothing is stored
        TipPersistenceError: The charge exists but the tip could not be saved
    """
    if not page.accepting_tips:
        raise ValidationError("This page is not accepting tips right now.")

    validate_tip_amount(amount, minimum=max(page.minimum_tip, 1))
    validate_supporter_name(supporter_name)
    supporter_name = supporter_name.strip()

    if destination_address is None:
        destination_address = page.lightning_address
    validate_lightning_address(destination_address)
    if destination_address.lower() != page.lightning_address.lower():
        raise ValidationError("The page's Lightning address has changed. Please reload the page.")

    gateway = gateway or get_gateway()
    reference = uuid.uuid4()
    charge = gateway.create_charge(
        amount=amount,
        destination_address=page.lightning_address,
        description=f"Tip for {page.display_name} from {supporter_name}",
        expiry=timedelta(seconds=settings.TIP_CHARGE_EXPIRY_SECONDS),
        internal_id=reference,
    )

    try:
        tip = Tip.objects.create(
            page=page,
            reference=reference,
            payment_id=charge.external_id,
            amount=amount,
            supporter_name=supporter_name,
            message=message or '',
            invoice_request=charge.invoice_request,
            invoice_uri=charge.invoice_uri,
            expires_at=charge.expires_at,
            status=Tip.STATUS_PENDING,
        )
    except DatabaseError as e:
        # The charge is left unpaid and expires on the processor side.
        logger.error("Could not store tip for charge %s: %s", charge.external_id, e)
        raise TipPersistenceError("Could not record the tip, please try again") from e

    logger.info("Tip %s pending: %s sats to %s (charge %s)", tip.pk, amount, page.username, tip.payment_id)
    return tip


def find_tip(external_id=None, internal_id=None):
    """
    Look up a tip by processor charge id or by our own reference.

    Raises:
        TipNotFound: If neither identifier matches a tip
    """
    try:
        if external_id:
            return Tip.objects.get_by_payment_id(external_id)
        if internal_id:
            return Tip.objects.get(reference=uuid.UUID(str(internal_id)))
    except (Tip.DoesNotExist, ValueError):
        pass
    raise TipNotFound(f"No tip for charge {external_id or internal_id}")


def reconcile(external_id, reported_status, amount=None):
    """
    Apply a status reported by the processor to the matching tip.

    Safe to call any number of times, concurrently, from the webhook and the
    poll path. Only the first call that finds the tip pending changes it;
    the rest return the tip as it is.

    Args:
        external_id: Processor charge id
        reported_status: pending, completed, expired or error
        amount: Amount the processor reports in sats, if known

    Returns:
        Tip: The tip after reconciliation

    Raises:
        TipNotFound: If no tip carries this charge id
    """
    tip = find_tip(external_id=external_id)

    if reported_status not in (Tip.STATUS_COMPLETED, Tip.STATUS_EXPIRED, Tip.STATUS_ERROR):
        logger.debug("Tip %s: nothing to do for status %r", tip.pk, reported_status)
        return tip

    if amount is not None and amount != tip.amount:
        logger.warning("Tip %s: processor reports %s sats, tip is for %s", tip.pk, amount, tip.amount)

    try:
        if reported_status == Tip.STATUS_COMPLETED:
            tip.mark_completed()
        elif reported_status == Tip.STATUS_EXPIRED:
            tip.mark_expired()
        else:
            tip.mark_error()
    except TipConflict:
        logger.info("Tip %s already %s, ignoring reported %s", tip.pk, tip.status, reported_status)
        return tip

    logger.info("Tip %s is now %s", tip.pk, tip.status)
    return tip


def check_status(tip_id, gateway=None):
    """
    Return a tip, asking the processor first if it is still pending.

    This is the poll path: the supporter's browser calls it every few
    seconds, so completion does not depend on webhook delivery.

    Raises:
        TipNotFound: If the tip does not exist
        GatewayError: If the processor could not be asked
    """
    try:
        tip = Tip.objects.get(pk=tip_id)
    except Tip.DoesNotExist:
        raise TipNotFound(f"No tip with id {tip_id}")

    if tip.status != Tip.STATUS_PENDING or not tip.payment_id:
        return tip

    gateway = gateway or get_gateway()
    remote = gateway.fetch_charge_status(tip.payment_id)
    if remote.status == Tip.STATUS_PENDING:
        return tip
    return reconcile(tip.payment_id, remote.status, amount=remote.amount)


def wait_for_settlement(tip_id, interval=None, timeout=None, gateway=None, sleep=time.sleep, clock=time.monotonic):
    """
    Poll a tip until it reaches a terminal status or the timeout passes.

    A tip still pending at the deadline is marked as error. Gateway failures
    during polling are logged and polling continues.

    Returns:
        Tip: The tip in its final state
    """
    interval = settings.TIP_POLL_INTERVAL_SECONDS if interval is None else interval
    timeout = settings.TIP_POLL_TIMEOUT_SECONDS if timeout is None else timeout
    gateway = gateway or get_gateway()
    deadline = clock() + timeout

    while True:
        try:
            tip = check_status(tip_id, gateway=gateway)
        except GatewayError as e:
            logger.warning("Status check for tip %s failed: %s", tip_id, e)
            tip = Tip.objects.get(pk=tip_id)

        if tip.is_terminal:
            return tip
        if clock() >= deadline:
            break
        sleep(interval)

    try:
        tip.mark_error()
        logger.warning("Tip %s timed out after %ss without payment", tip.pk, timeout)
    except TipConflict:
        # settled by the webhook between the last poll and now
        logger.info("Tip %s settled as %s at the poll deadline", tip.pk, tip.status)
    return tip
