"""
Tipjar Watch Tip Management Command

Polls the payment processor for one tip until it completes, expires or the
poll timeout passes, the same loop the tip form runs in the browser. Useful
for support requests about a stuck payment.

Usage:
    python manage.py watch_tip TIP_ID [--interval SECONDS] [--timeout SECONDS]
"""

from django.core.management.base import BaseCommand, CommandError

from tipjar.exceptions import TipNotFound
from tipjar.models import Tip
from tipjar.payments import wait_for_settlement


class Command(BaseCommand):
    help = 'Poll a tip until it reaches a final status'

    def add_arguments(self, parser):
        parser.add_argument('tip_id', type=int)
        parser.add_argument('--interval', type=float, default=None, help='Seconds between polls')
        parser.add_argument('--timeout', type=float, default=None, help='Seconds before giving up')

    def handle(self, *args, **options):
        if not Tip.objects.filter(pk=options['tip_id']).exists():
            raise CommandError(f"Tip {options['tip_id']} does not exist")

        try:
            tip = wait_for_settlement(options['tip_id'], interval=options['interval'], timeout=options['timeout'])
        except TipNotFound as e:
            raise CommandError(str(e))

        style = self.style.SUCCESS if tip.status == Tip.STATUS_COMPLETED else self.style.WARNING
        self.stdout.write(style(f"Tip {tip.pk}: {tip.status}"))
