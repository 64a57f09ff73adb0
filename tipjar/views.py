"""
Tipjar Views

This module contains all view functions for the Tipjar application, handling:
- Public pages (page list, tipping pages)
- Tip creation and status polling for supporters
- The payment processor webhook
- Page owner dashboard and page updates

Payment state changes all go through tipjar.payments; the views only parse
requests and map results and errors onto HTTP responses.
"""

import json
import logging

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import Http404, JsonResponse
from django.shortcuts import get_object_or_404, render
from django.utils.safestring import mark_safe
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .exceptions import GatewayError, TipNotFound, TipPersistenceError, WebhookSignatureError
from .gateway import get_gateway
from .models import Tip, TippingPage
from .payments import check_status, find_tip, initiate_tip, reconcile
from .stats import page_stats
from .utils import parse_webhook_payload, verify_webhook_signature

logger = logging.getLogger(__name__)


def _error_message(e):
    """First human-readable message of a Django ValidationError."""
    return e.messages[0] if getattr(e, 'messages', None) else str(e)


def _tip_status_payload(tip):
    return {
        'id': tip.pk,
        'externalId': tip.payment_id,
        'status': tip.status,
        'amount': tip.amount,
    }


def _find_webhook_tip(event):
    """Resolve a webhook's tip by charge id, falling back to our reference."""
    if event['external_id']:
        try:
            return find_tip(external_id=event['external_id'])
        except TipNotFound:
            if not event['internal_id']:
                raise
    tip = find_tip(internal_id=event['internal_id'])
    if event['external_id'] and event['external_id'] != tip.payment_id:
        logger.warning("Webhook charge %s does not match tip %s (charge %s)",
                       event['external_id'], tip.pk, tip.payment_id)
    return tip


def page_list(request):
    """
    Display all active pages, optionally filtered by kind.

    Returns:
        HttpResponse: Rendered page list
    """
    pages = TippingPage.objects.filter(suspended=False, deactivated=False)
    kind = request.GET.get('kind')
    if kind in dict(TippingPage.KIND_CHOICES):
        pages = pages.filter(kind=kind)
    return render(request, 'tipjar/page_list.html', {'pages': pages, 'kind': kind})


def tipping_page(request, username):
    """
    Display a public tipping page with its statistics.

    Suspended or deactivated pages, and pages without a Lightning address,
    render an error page instead of the tip form.
    """
    page = get_object_or_404(TippingPage, username=username.lower())

    if page.suspended:
        return render(request, 'tipjar/error.html', {
            'error_message': mark_safe("This page is suspended.<br>If you own it, please contact support."),
            'error_title': "Suspended Page"
        })

    if page.deactivated:
        return render(request, 'tipjar/error.html', {
            'error_message': mark_safe("This page is temporarily deactivated.<br>If you own it, please contact support."),
            'error_title': "Deactivated Page"
        })

    if not page.lightning_address:
        return render(request, 'tipjar/error.html', {
            'error_message': "This page has no Lightning address yet.",
            'error_title': "No Lightning Address"
        })

    return render(request, 'tipjar/tipping_page.html', {
        'page': page,
        'stats': page_stats(page),
        'poll_interval_ms': settings.TIP_POLL_INTERVAL_SECONDS * 1000,
        'poll_timeout_ms': settings.TIP_POLL_TIMEOUT_SECONDS * 1000,
    })


@csrf_exempt
@require_POST
def create_payment(request):
    """
    Start a tip: create a Lightning charge and a pending tip.

    Expects JSON ``{amount, pageId, supporterName, destinationAddress?, message?}``
    (``lightningAddress`` is accepted as an alias of ``destinationAddress``).

    Returns:
        JsonResponse: Invoice details, or an error with status 400/404/500/502
    """
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JsonResponse({'error': 'Invalid JSON data'}, status=400)
    if not isinstance(data, dict):
        return JsonResponse({'error': 'Invalid JSON data'}, status=400)

    page_id = data.get('pageId')
    if page_id is None:
        return JsonResponse({'error': 'pageId is required'}, status=400)
    if isinstance(page_id, str) and page_id.isdigit():
        page_id = int(page_id)
    # bool is an int subclass
    if isinstance(page_id, bool) or not isinstance(page_id, int):
        return JsonResponse({'error': 'pageId must be an integer'}, status=400)
    try:
        page = TippingPage.objects.get(pk=page_id)
    except TippingPage.DoesNotExist:
        return JsonResponse({'error': 'Page not found'}, status=404)

    destination = data.get('destinationAddress') or data.get('lightningAddress')

    try:
        tip = initiate_tip(
            page,
            data.get('amount'),
            data.get('supporterName'),
            destination_address=destination,
            message=data.get('message') or '',
            gateway=get_gateway(),
        )
    except ValidationError as e:
        return JsonResponse({'error': _error_message(e)}, status=400)
    except GatewayError as e:
        logger.warning("Charge creation failed for page %s: %s", page.username, e)
        return JsonResponse({'error': 'Failed to create payment, please try again'}, status=502)
    except TipPersistenceError as e:
        return JsonResponse({'error': str(e)}, status=500)

    return JsonResponse({
        'id': tip.pk,
        'externalId': tip.payment_id,
        'invoiceRequest': tip.invoice_request,
        'invoiceUri': tip.invoice_uri,
        'expiresAt': tip.expires_at.isoformat() if tip.expires_at else None,
        'status': tip.status,
    })


@require_GET
def payment_status(request, tip_id=None, external_id=None):
    """
    Report a tip's status, asking the processor first while it is pending.

    Polled by the tip form every few seconds until the status is terminal.
    """
    try:
        if external_id is not None:
            tip_id = find_tip(external_id=external_id).pk
        tip = check_status(tip_id, gateway=get_gateway())
    except TipNotFound:
        raise Http404("Tip not found")
    except GatewayError as e:
        logger.warning("Status check failed for tip %s: %s", tip_id, e)
        return JsonResponse({'error': 'Failed to check payment status'}, status=502)

    return JsonResponse(_tip_status_payload(tip))


@csrf_exempt
@require_POST
def payment_webhook(request):
    """
    Receive charge status updates from the payment processor.

    The raw body must be signed with the shared webhook secret. Unknown
    charges are acknowledged so the processor stops redelivering them.
    """
    signature = request.headers.get(settings.LIGHTNING_WEBHOOK_SIGNATURE_HEADER)
    try:
        verify_webhook_signature(request.body, signature, settings.LIGHTNING_WEBHOOK_SECRET)
    except WebhookSignatureError as e:
        logger.warning("Rejected webhook: %s", e)
        return JsonResponse({'error': 'Invalid signature'}, status=401)

    try:
        event = parse_webhook_payload(json.loads(request.body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
        logger.warning("Malformed webhook body: %s", e)
        return JsonResponse({'error': 'Invalid payload'}, status=400)

    try:
        tip = _find_webhook_tip(event)
        tip = reconcile(tip.payment_id, event['status'], amount=event['amount'])
    except TipNotFound:
        logger.warning("Webhook for unknown charge %s / %s ignored", event['external_id'], event['internal_id'])
        return JsonResponse({'success': True, 'ignored': True})

    return JsonResponse({'success': True, 'status': tip.status})


@require_GET
def page_stats_json(request, username):
    """Public statistics for a page as JSON."""
    page = get_object_or_404(TippingPage, username=username.lower())
    stats = page_stats(page)
    return JsonResponse({
        'username': page.username,
        'tipCount': stats['tip_count'],
        'totalReceived': stats['total_received'],
        'topSupporter': stats['top_supporter'],
        'progress': stats['progress'],
        'recentTips': [
            {
                'supporterName': tip.supporter_name,
                'amount': tip.amount,
                'message': tip.message,
                'createdAt': tip.created_at.isoformat(),
            }
            for tip in stats['recent_tips']
        ],
    })


@login_required
def dashboard(request):
    """
    Display the owner's pages with their statistics and pending tips.

    Returns:
        HttpResponse: Dashboard page
    """
    pages = TippingPage.objects.filter(owner=request.user)
    rows = [
        {
            'page': page,
            'stats': page_stats(page),
            'pending_count': Tip.objects.pending().filter(page=page).count(),
        }
        for page in pages
    ]
    return render(request, 'tipjar/dashboard.html', {'rows': rows})


@require_http_methods(["POST"])
def update_page(request, username):
    """
    Let a page owner change display name, bio or minimum tip.

    Expects JSON with any of ``display_name``, ``bio``, ``minimum_tip``.
    The Lightning address is not editable here; pending tips were issued
    against it.
    """
    if not request.user.is_authenticated:
        return JsonResponse({'success': False, 'error': 'Authentication required'}, status=401)

    page = TippingPage.objects.filter(username=username.lower()).first()
    if page is None or page.owner_id != request.user.pk:
        return JsonResponse({'success': False, 'error': 'Page not found'}, status=404)

    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JsonResponse({'success': False, 'error': 'Invalid JSON data'}, status=400)
    if not isinstance(data, dict):
        return JsonResponse({'success': False, 'error': 'Invalid JSON data'}, status=400)

    if 'display_name' in data:
        display_name = str(data['display_name'] or '').strip()
        if not display_name:
            return JsonResponse({'success': False, 'error': 'Display name cannot be empty'}, status=400)
        if len(display_name) > 100:
            return JsonResponse({'success': False, 'error': 'Display name too long (max 100 characters)'}, status=400)
        page.display_name = display_name

    if 'bio' in data:
        bio = str(data['bio'] or '').strip()
        if len(bio) > 500:
            return JsonResponse({'success': False, 'error': 'Bio too long (max 500 characters)'}, status=400)
        page.bio = bio

    if 'minimum_tip' in data:
        minimum_tip = data['minimum_tip']
        if isinstance(minimum_tip, bool) or not isinstance(minimum_tip, int) or minimum_tip < 1:
            return JsonResponse({'success': False, 'error': 'Minimum tip must be a positive number of sats'}, status=400)
        page.minimum_tip = minimum_tip

    page.save(update_fields=['display_name', 'bio', 'minimum_tip'])
    return JsonResponse({'success': True, 'message': 'Page updated successfully'})


def custom_page_not_found(request, exception):
    """Custom 404 handler, used only when DEBUG=False."""
    return render(request, 'tipjar/404.html', status=404)
