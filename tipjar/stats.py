"""
Tipjar Page Statistics

Read-only figures shown on public pages and the dashboard. Everything here is
computed from completed tips; nothing is written.
"""

from django.conf import settings
from django.db.models import Count, Sum

from .models import Tip


def page_totals(page):
    """Return ``(count, total_sats)`` of completed tips for a page."""
    totals = Tip.objects.completed().filter(page=page).aggregate(count=Count('id'), total=Sum('amount'))
    return totals['count'] or 0, totals['total'] or 0


def top_supporter(page):
    """
    Supporter with the highest summed completed-tip amount.

    Ties go to the alphabetically first name so the result doesn't depend on
    database row order.

    Returns:
        dict: ``{'name': ..., 'total': ...}`` or None if the page has no completed tips
    """
    row = (
        Tip.objects.completed()
        .filter(page=page)
        .values('supporter_name')
        .annotate(total=Sum('amount'))
        .order_by('-total', 'supporter_name')
        .first()
    )
    if row is None:
        return None
    return {'name': row['supporter_name'], 'total': row['total']}


def recent_tips(page, limit=None):
    """Most recent completed tips for a page, newest first."""
    if limit is None:
        limit = settings.RECENT_TIPS_LIMIT
    return list(Tip.objects.completed_for_page(page, limit=limit))


def page_stats(page, limit=None):
    """
    Bundle the public statistics for one page.

    ``progress`` is the percentage of ``target_amount`` raised (capped at 100)
    for pages that have a target, otherwise None.
    """
    count, total = page_totals(page)
    progress = None
    if page.target_amount:
        progress = min(100, int(total * 100 / page.target_amount))
    return {
        'tip_count': count,
        'total_received': total,
        'top_supporter': top_supporter(page),
        'recent_tips': recent_tips(page, limit=limit),
        'progress': progress,
    }
