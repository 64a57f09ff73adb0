"""
Tipjar Expire Stale Tips Management Command

Settles tips that stayed pending past their charge expiry, for supporters
who closed the page before payment and charges whose webhook never arrived.
Each overdue tip is checked with the payment processor first; if the
processor still can't give a terminal status, the tip is marked as error.

Tips are never deleted.

Usage:
    python manage.py expire_stale_tips [--grace SECONDS]
"""

from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db.models import Q
from django.utils import timezone

from tipjar.exceptions import GatewayError, TipConflict
from tipjar.gateway import get_gateway
from tipjar.models import Tip
from tipjar.payments import check_status


class Command(BaseCommand):
    help = 'Settle pending tips whose charge has expired'

    def add_arguments(self, parser):
        parser.add_argument(
            '--grace',
            type=int,
            default=60,
            help='Seconds past the charge expiry before a tip counts as stale (default: 60)',
        )

    def handle(self, *args, **options):
        now = timezone.now()
        cutoff = now - timedelta(seconds=options['grace'])
        # Tips without a recorded expiry fall back to the configured charge lifetime.
        fallback_cutoff = cutoff - timedelta(seconds=settings.TIP_CHARGE_EXPIRY_SECONDS)

        stale = Tip.objects.pending().filter(
            Q(expires_at__lt=cutoff) | Q(expires_at__isnull=True, created_at__lt=fallback_cutoff)
        )

        gateway = get_gateway()
        counts = {Tip.STATUS_COMPLETED: 0, Tip.STATUS_EXPIRED: 0, Tip.STATUS_ERROR: 0}

        for tip in stale.iterator():
            try:
                tip = check_status(tip.pk, gateway=gateway)
            except GatewayError as e:
                self.stderr.write(f"Tip {tip.pk}: status check failed ({e})")

            if tip.status == Tip.STATUS_PENDING:
                try:
                    tip.mark_error()
                except TipConflict:
                    # settled concurrently; tip now holds the stored status
                    pass
            if tip.status in counts:
                counts[tip.status] += 1

        self.stdout.write(
            self.style.SUCCESS(
                f"Settled {sum(counts.values())} stale tips: "
                f"{counts[Tip.STATUS_COMPLETED]} completed, "
                f"{counts[Tip.STATUS_EXPIRED]} expired, "
                f"{counts[Tip.STATUS_ERROR]} error"
            )
        )
