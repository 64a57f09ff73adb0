from django.test import TestCase, TransactionTestCase, Client, override_settings
from django.urls import reverse
from django.utils import timezone
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError, connection, transaction
from django.contrib.auth.models import User
from unittest import skipIf
from unittest.mock import patch, MagicMock

from .exceptions import GatewayError, TipConflict, TipNotFound, TipPersistenceError, WebhookSignatureError
from .gateway import Charge, ChargeStatus, LightningGateway
from .models import Tip, TippingPage
from .payments import check_status, find_tip, initiate_tip, reconcile, wait_for_settlement
from .stats import page_stats, page_totals, recent_tips, top_supporter
from .utils import parse_webhook_payload, sign_webhook_body, verify_webhook_signature
from .validators import validate_lightning_address, validate_tip_amount, validate_username

import io
import itertools
import threading
import json
from datetime import timedelta
import requests


WEBHOOK_SECRET = 'whsec_test'


def make_gateway(external_id='abc123', status='pending'):
    """Return a mock gateway whose charges and status lookups succeed."""
    gateway = MagicMock()
    gateway.create_charge.return_value = Charge(
        external_id=external_id,
        invoice_request='lnbc50u1pexample',
        invoice_uri='lightning:lnbc50u1pexample',
        expires_at=timezone.now() + timedelta(minutes=5),
    )
    gateway.fetch_charge_status.return_value = ChargeStatus(
        external_id=external_id, status=status, amount=None, created_at=None, completed_at=None,
    )
    return gateway


def mock_response(body, status_code=200):
    response = MagicMock(status_code=status_code)
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


class BaseTestCase(TestCase):
    def setUp(self):
        """Create an owner and a default tipping page."""
        self.client = Client()
        self.user = User.objects.create_user(username='owner@example.com', email='owner@example.com', password='pass12345')
        self.page = TippingPage.objects.create(
            owner=self.user,
            username='alice',
            display_name='Alice',
            lightning_address='p@ln',
            minimum_tip=100,
        )

    def make_tip(self, payment_id, amount=1000, supporter_name='Bob', status=Tip.STATUS_PENDING, page=None):
        """Create a tip; completed tips go through mark_completed so page totals stay consistent."""
        tip = Tip.objects.create(
            page=page or self.page,
            payment_id=payment_id,
            amount=amount,
            supporter_name=supporter_name,
            expires_at=timezone.now() + timedelta(minutes=5),
        )
        if status == Tip.STATUS_COMPLETED:
            tip.mark_completed()
        elif status == Tip.STATUS_EXPIRED:
            tip.mark_expired()
        elif status == Tip.STATUS_ERROR:
            tip.mark_error()
        return tip


class ModelTests(BaseTestCase):
    def test_page_str_and_username_lowercased(self):
        """TippingPage stores usernames lowercased and prints its display name."""
        page = TippingPage.objects.create(username='BobBuilds', display_name='Bob', lightning_address='bob@ln')
        self.assertEqual(page.username, 'bobbuilds')
        self.assertEqual(str(page), 'Bob')

    def test_accepting_tips(self):
        """Suspended, deactivated or address-less pages do not accept tips."""
        self.assertTrue(self.page.accepting_tips)
        self.page.suspended = True
        self.assertFalse(self.page.accepting_tips)
        self.page.suspended = False
        self.page.lightning_address = ''
        self.assertFalse(self.page.accepting_tips)

    def test_mark_completed_credits_page(self):
        """Completing a tip sets completed_at and adds its amount to the page totals."""
        tip = self.make_tip('c1', amount=5000)
        tip.mark_completed()
        self.assertEqual(tip.status, Tip.STATUS_COMPLETED)
        self.assertIsNotNone(tip.completed_at)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)
        self.assertEqual(self.page.tip_count, 1)

    def test_second_transition_conflicts(self):
        """A terminal tip refuses any further transition and the totals don't move."""
        tip = self.make_tip('c1', amount=5000, status=Tip.STATUS_COMPLETED)
        with self.assertRaises(TipConflict):
            tip.mark_completed()
        with self.assertRaises(TipConflict):
            tip.mark_expired()
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)
        self.assertEqual(self.page.tip_count, 1)

    def test_stale_instances_complete_once(self):
        """Two copies of the same pending tip racing to complete apply it once."""
        tip = self.make_tip('race', amount=2500)
        first = Tip.objects.get(pk=tip.pk)
        second = Tip.objects.get(pk=tip.pk)
        first.mark_completed()
        with self.assertRaises(TipConflict):
            second.mark_completed()
        self.assertEqual(second.status, Tip.STATUS_COMPLETED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 2500)
        self.assertEqual(self.page.tip_count, 1)

    def test_expired_tip_has_no_completed_at(self):
        """Expiring a tip leaves completed_at empty and totals untouched."""
        tip = self.make_tip('e1', status=Tip.STATUS_EXPIRED)
        self.assertIsNone(tip.completed_at)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)

    def test_payment_id_is_immutable(self):
        """Changing an assigned payment_id is refused."""
        tip = self.make_tip('fixed')
        tip.payment_id = 'other'
        with self.assertRaises(ValueError):
            tip.save()

    def test_amount_must_be_positive(self):
        """The database rejects zero-amount tips."""
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Tip.objects.create(page=self.page, payment_id='zero', amount=0, supporter_name='Bob')

    def test_completed_requires_completed_at(self):
        """The database rejects a completed tip without completed_at."""
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Tip.objects.create(page=self.page, payment_id='bad', amount=10, supporter_name='Bob',
                                   status=Tip.STATUS_COMPLETED)

    def test_is_overdue(self):
        """Only pending tips past their charge expiry are overdue."""
        tip = self.make_tip('o1')
        Tip.objects.filter(pk=tip.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        tip.refresh_from_db()
        self.assertTrue(tip.is_overdue())
        tip.mark_expired()
        self.assertFalse(tip.is_overdue())

    def test_store_queries(self):
        """completed_for_page and sum_completed_for_page only see completed tips."""
        self.make_tip('a', amount=100, status=Tip.STATUS_COMPLETED)
        self.make_tip('b', amount=200, status=Tip.STATUS_COMPLETED)
        self.make_tip('c', amount=400)
        self.make_tip('d', amount=800, status=Tip.STATUS_EXPIRED)
        self.assertEqual(Tip.objects.sum_completed_for_page(self.page), 300)
        self.assertEqual(Tip.objects.completed_for_page(self.page).count(), 2)
        self.assertEqual(len(Tip.objects.completed_for_page(self.page, limit=1)), 1)
        self.assertEqual(Tip.objects.get_by_payment_id('c').amount, 400)


class ValidatorsTests(TestCase):
    def test_validate_lightning_address(self):
        """Lightning addresses must look like name@domain."""
        validate_lightning_address('p@ln')
        validate_lightning_address('satoshi@walletofsatoshi.com')
        for bad in ('', 'nope', '@ln', 'a@', None):
            with self.assertRaises(ValidationError):
                validate_lightning_address(bad)

    def test_validate_username(self):
        """Reserved words and malformed usernames are rejected."""
        validate_username('alice')
        for bad in ('ab', 'admin', 'api', 'support_team', 'has space', 'a.b'):
            with self.assertRaises(ValidationError):
                validate_username(bad)

    def test_validate_tip_amount(self):
        """Amounts must be ints, positive, and at least the minimum."""
        validate_tip_amount(100, minimum=100)
        for bad in (0, -5, 1.5, '100', True, None):
            with self.assertRaises(ValidationError):
                validate_tip_amount(bad)
        with self.assertRaises(ValidationError):
            validate_tip_amount(99, minimum=100)


@override_settings(LIGHTNING_CALLBACK_URL='')
class GatewayTests(TestCase):
    def setUp(self):
        self.gateway = LightningGateway(api_key='key', base_url='https://gw.test/v0', timeout=5)

    @patch('tipjar.gateway.requests.request')
    def test_create_charge_success(self, mock_request):
        """create_charge posts msats to the fetch-charge endpoint and parses the invoice."""
        mock_request.return_value = mock_response({
            'success': True,
            'data': {
                'id': 'abc123',
                'invoice': {'request': 'lnbc1', 'uri': 'lightning:lnbc1'},
                'expiresAt': '2030-01-01T00:05:00Z',
            },
        })
        charge = self.gateway.create_charge(5000, 'p@ln', 'Tip', timedelta(minutes=5), internal_id='ref-1')
        self.assertEqual(charge.external_id, 'abc123')
        self.assertEqual(charge.invoice_request, 'lnbc1')
        self.assertEqual(charge.invoice_uri, 'lightning:lnbc1')
        self.assertEqual(charge.expires_at.year, 2030)

        method, url = mock_request.call_args[0]
        kwargs = mock_request.call_args[1]
        self.assertEqual(method, 'POST')
        self.assertEqual(url, 'https://gw.test/v0/ln-address/fetch-charge')
        self.assertEqual(kwargs['json']['amount'], '5000000')
        self.assertEqual(kwargs['json']['lnaddress'], 'p@ln')
        self.assertEqual(kwargs['json']['expiresIn'], 300)
        self.assertEqual(kwargs['json']['internalId'], 'ref-1')
        self.assertEqual(kwargs['headers']['apikey'], 'key')
        self.assertEqual(kwargs['timeout'], 5)

    @patch('tipjar.gateway.requests.request')
    def test_create_charge_falsy_success_is_failure(self, mock_request):
        """A 200 response with success=false raises GatewayError."""
        mock_request.return_value = mock_response({'success': False, 'message': 'Invalid address'})
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.create_charge(5000, 'p@ln', 'Tip', timedelta(minutes=5))
        self.assertIn('Invalid address', str(ctx.exception))

    @patch('tipjar.gateway.requests.request')
    def test_create_charge_missing_success_flag_is_failure(self, mock_request):
        """A body without a success flag is treated as failure."""
        mock_request.return_value = mock_response({'data': {'id': 'x', 'invoice': {'request': 'lnbc1'}}})
        with self.assertRaises(GatewayError):
            self.gateway.create_charge(5000, 'p@ln', 'Tip', 300)

    @patch('tipjar.gateway.requests.request')
    def test_network_error(self, mock_request):
        """Transport errors surface as GatewayError."""
        mock_request.side_effect = requests.ConnectionError('down')
        with self.assertRaises(GatewayError):
            self.gateway.create_charge(5000, 'p@ln', 'Tip', 300)

    @patch('tipjar.gateway.requests.request')
    def test_http_error_and_unreadable_body(self, mock_request):
        """Non-2xx responses and non-JSON bodies raise GatewayError."""
        mock_request.return_value = mock_response({'success': False, 'message': 'Not found'}, status_code=404)
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.fetch_charge_status('missing')
        self.assertEqual(ctx.exception.status_code, 404)

        mock_request.return_value = mock_response(ValueError('no json'))
        with self.assertRaises(GatewayError):
            self.gateway.fetch_charge_status('abc123')

    @patch('tipjar.gateway.requests.request')
    def test_fetch_charge_status(self, mock_request):
        """fetch_charge_status maps the processor status and converts msats to sats."""
        mock_request.return_value = mock_response({
            'success': True,
            'data': {
                'id': 'abc123',
                'status': 'completed',
                'amount': {'amount': '5000000', 'currency': 'BTC'},
                'createdAt': '2030-01-01T00:00:00Z',
                'confirmedAt': '2030-01-01T00:01:00Z',
            },
        })
        status = self.gateway.fetch_charge_status('abc123')
        self.assertEqual(status.status, 'completed')
        self.assertEqual(status.amount, 5000)
        self.assertIsNotNone(status.completed_at)
        self.assertEqual(mock_request.call_args[0][1], 'https://gw.test/v0/charges/abc123')

    @patch('tipjar.gateway.requests.request')
    def test_fetch_charge_status_unknown_status(self, mock_request):
        """An unrecognised processor status raises GatewayError."""
        mock_request.return_value = mock_response({'success': True, 'data': {'id': 'abc123', 'status': 'weird'}})
        with self.assertRaises(GatewayError):
            self.gateway.fetch_charge_status('abc123')


class UtilsTests(TestCase):
    def test_signature_roundtrip_and_prefix(self):
        """A correct signature passes, with or without the sha256= prefix."""
        body = b'{"status": "completed"}'
        sig = sign_webhook_body(body, WEBHOOK_SECRET)
        verify_webhook_signature(body, sig, WEBHOOK_SECRET)
        verify_webhook_signature(body, 'sha256=' + sig.upper(), WEBHOOK_SECRET)

    def test_signature_rejections(self):
        """Wrong, missing or unconfigured signatures are rejected."""
        body = b'{"status": "completed"}'
        sig = sign_webhook_body(body, WEBHOOK_SECRET)
        with self.assertRaises(WebhookSignatureError):
            verify_webhook_signature(body + b' ', sig, WEBHOOK_SECRET)
        with self.assertRaises(WebhookSignatureError):
            verify_webhook_signature(body, None, WEBHOOK_SECRET)
        with self.assertRaises(WebhookSignatureError):
            verify_webhook_signature(body, sig, '')

    def test_non_ascii_signature_rejected(self):
        """A signature header with non-ASCII characters is a mismatch, not a crash."""
        body = b'{"status": "completed"}'
        with self.assertRaises(WebhookSignatureError):
            verify_webhook_signature(body, 'caf\xe9', WEBHOOK_SECRET)
        with self.assertRaises(WebhookSignatureError):
            verify_webhook_signature(body, 'sha256=☃' * 8, WEBHOOK_SECRET)

    def test_parse_webhook_payload_maps_status(self):
        """Processor status words map onto tip statuses like status lookups do."""
        for word, expected in (('paid', 'completed'), ('PAID', 'completed'), ('failed', 'error'),
                               ('processing', 'pending'), ('completed', 'completed')):
            event = parse_webhook_payload({'status': word, 'data': {'id': 'abc123'}})
            self.assertEqual(event['status'], expected)
        self.assertIsNone(parse_webhook_payload({'status': 'refunded', 'data': {'id': 'abc123'}})['status'])
        self.assertIsNone(parse_webhook_payload({'data': {'id': 'abc123'}})['status'])

    def test_parse_webhook_payload_shapes(self):
        """Both the data.id and the internalId payload shapes are understood."""
        event = parse_webhook_payload({'status': 'completed', 'data': {'id': 'abc123', 'amount': '5000000'}})
        self.assertEqual(event['external_id'], 'abc123')
        self.assertEqual(event['status'], 'completed')
        self.assertEqual(event['amount'], 5000)

        event = parse_webhook_payload({'status': 'Expired', 'internalId': 'ref-1'})
        self.assertIsNone(event['external_id'])
        self.assertEqual(event['internal_id'], 'ref-1')
        self.assertEqual(event['status'], 'expired')

        with self.assertRaises(ValueError):
            parse_webhook_payload({'status': 'completed'})
        with self.assertRaises(ValueError):
            parse_webhook_payload(['not', 'an', 'object'])


class InitiateTipTests(BaseTestCase):
    def test_initiate_tip_creates_pending_tip(self):
        """A valid request stores exactly one pending tip and leaves the totals alone."""
        gateway = make_gateway('abc123')
        tip = initiate_tip(self.page, 5000, 'Alice', destination_address='p@ln', gateway=gateway)

        self.assertEqual(Tip.objects.count(), 1)
        self.assertEqual(tip.status, Tip.STATUS_PENDING)
        self.assertEqual(tip.amount, 5000)
        self.assertEqual(tip.supporter_name, 'Alice')
        self.assertEqual(tip.payment_id, 'abc123')
        self.assertEqual(tip.invoice_request, 'lnbc50u1pexample')
        self.assertIsNone(tip.completed_at)

        kwargs = gateway.create_charge.call_args[1]
        self.assertEqual(kwargs['amount'], 5000)
        self.assertEqual(kwargs['destination_address'], 'p@ln')
        self.assertEqual(str(kwargs['internal_id']), str(tip.reference))

        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)
        self.assertEqual(self.page.tip_count, 0)

    def test_zero_amount_rejected(self):
        """amount=0 fails validation before the processor is called."""
        gateway = make_gateway()
        with self.assertRaises(ValidationError):
            initiate_tip(self.page, 0, 'Alice', gateway=gateway)
        gateway.create_charge.assert_not_called()
        self.assertEqual(Tip.objects.count(), 0)

    def test_below_minimum_and_blank_name_rejected(self):
        """Amounts under the page minimum and blank names are rejected."""
        gateway = make_gateway()
        with self.assertRaises(ValidationError):
            initiate_tip(self.page, 99, 'Alice', gateway=gateway)
        with self.assertRaises(ValidationError):
            initiate_tip(self.page, 500, '   ', gateway=gateway)
        self.assertEqual(Tip.objects.count(), 0)

    def test_destination_mismatch_rejected(self):
        """A destination different from the page's address is refused."""
        gateway = make_gateway()
        with self.assertRaises(ValidationError):
            initiate_tip(self.page, 500, 'Alice', destination_address='other@ln', gateway=gateway)
        gateway.create_charge.assert_not_called()

    def test_suspended_page_rejected(self):
        """Suspended pages do not accept tips."""
        self.page.suspended = True
        self.page.save()
        with self.assertRaises(ValidationError):
            initiate_tip(self.page, 500, 'Alice', gateway=make_gateway())

    def test_gateway_failure_stores_nothing(self):
        """If the charge can't be created, no tip is stored."""
        gateway = make_gateway()
        gateway.create_charge.side_effect = GatewayError('down')
        with self.assertRaises(GatewayError):
            initiate_tip(self.page, 500, 'Alice', gateway=gateway)
        self.assertEqual(Tip.objects.count(), 0)

    def test_persistence_failure_fails_request(self):
        """A failed insert after a successful charge fails the whole request."""
        with patch('tipjar.payments.Tip.objects.create', side_effect=DatabaseError('down')):
            with self.assertRaises(TipPersistenceError):
                initiate_tip(self.page, 500, 'Alice', gateway=make_gateway())
        self.assertEqual(Tip.objects.count(), 0)


class ReconcileTests(BaseTestCase):
    def test_completed_credits_page_once(self):
        """Reconciling completed twice credits the page exactly once."""
        tip = self.make_tip('abc123', amount=5000)
        reconcile('abc123', 'completed')
        again = reconcile('abc123', 'completed')
        self.assertEqual(again.pk, tip.pk)
        self.assertEqual(again.status, Tip.STATUS_COMPLETED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)
        self.assertEqual(self.page.tip_count, 1)

    def test_expired(self):
        """Reconciling expired marks the tip expired without touching totals."""
        self.make_tip('abc123', amount=5000)
        tip = reconcile('abc123', 'expired')
        self.assertEqual(tip.status, Tip.STATUS_EXPIRED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)

    def test_completed_after_expired_is_ignored(self):
        """Once expired, a late completed report changes nothing."""
        self.make_tip('abc123', amount=5000, status=Tip.STATUS_EXPIRED)
        tip = reconcile('abc123', 'completed')
        self.assertEqual(tip.status, Tip.STATUS_EXPIRED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)

    def test_pending_report_is_noop(self):
        """A pending report leaves the tip pending."""
        self.make_tip('abc123')
        self.assertEqual(reconcile('abc123', 'pending').status, Tip.STATUS_PENDING)

    def test_unknown_charge(self):
        """Unknown charge ids raise TipNotFound."""
        with self.assertRaises(TipNotFound):
            reconcile('nope', 'completed')

    def test_stale_lookup_in_race(self):
        """A reconcile that read the tip before another completed it is a no-op."""
        tip = self.make_tip('abc123', amount=700)
        stale = Tip.objects.get(pk=tip.pk)
        reconcile('abc123', 'completed')
        with patch('tipjar.payments.find_tip', return_value=stale):
            result = reconcile('abc123', 'completed')
        self.assertEqual(result.status, Tip.STATUS_COMPLETED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 700)
        self.assertEqual(self.page.tip_count, 1)

    def test_totals_match_completed_sum(self):
        """Page total_received always equals the sum of completed tips."""
        for i, (amount, status) in enumerate([(100, 'completed'), (250, 'expired'), (300, 'completed'), (50, 'error')]):
            self.make_tip(f'p{i}', amount=amount)
            reconcile(f'p{i}', status)
            reconcile(f'p{i}', 'completed')
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, Tip.objects.sum_completed_for_page(self.page))
        self.assertEqual(self.page.total_received, 400)

    def test_find_tip_by_reference(self):
        """find_tip resolves our reference as well as the charge id."""
        tip = self.make_tip('abc123')
        self.assertEqual(find_tip(internal_id=str(tip.reference)).pk, tip.pk)
        with self.assertRaises(TipNotFound):
            find_tip(internal_id='not-a-uuid')


@skipIf(connection.vendor == 'sqlite', "SQLite test databases lock tables instead of waiting between writers")
class ConcurrentReconcileTests(TransactionTestCase):
    def test_concurrent_completions_credit_once(self):
        """Webhook and poll completing the same tip at once credit the page once."""
        page = TippingPage.objects.create(username='racer', display_name='Racer', lightning_address='r@ln')
        Tip.objects.create(page=page, payment_id='abc123', amount=1500, supporter_name='Bob')
        barrier = threading.Barrier(2)
        results, errors = [], []

        def worker():
            try:
                barrier.wait(timeout=5)
                results.append(reconcile('abc123', 'completed').status)
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(results, [Tip.STATUS_COMPLETED, Tip.STATUS_COMPLETED])
        page.refresh_from_db()
        self.assertEqual(page.tip_count, 1)
        self.assertEqual(page.total_received, 1500)


class CheckStatusTests(BaseTestCase):
    def test_pending_tip_expired_at_gateway(self):
        """A poll on a pending tip whose charge expired moves it to expired."""
        tip = self.make_tip('abc123', amount=5000)
        gateway = make_gateway('abc123', status='expired')
        result = check_status(tip.pk, gateway=gateway)
        self.assertEqual(result.status, Tip.STATUS_EXPIRED)
        gateway.fetch_charge_status.assert_called_once_with('abc123')
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)

    def test_pending_tip_paid_at_gateway(self):
        """A poll can complete a tip without any webhook."""
        tip = self.make_tip('abc123', amount=5000)
        result = check_status(tip.pk, gateway=make_gateway('abc123', status='completed'))
        self.assertEqual(result.status, Tip.STATUS_COMPLETED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)

    def test_terminal_tip_skips_gateway(self):
        """Terminal tips are returned without asking the processor."""
        tip = self.make_tip('abc123', status=Tip.STATUS_COMPLETED)
        gateway = make_gateway()
        self.assertEqual(check_status(tip.pk, gateway=gateway).status, Tip.STATUS_COMPLETED)
        gateway.fetch_charge_status.assert_not_called()

    def test_unknown_tip(self):
        with self.assertRaises(TipNotFound):
            check_status(999999, gateway=make_gateway())

    def test_wait_for_settlement_times_out_to_error(self):
        """A tip still pending at the poll deadline is marked error."""
        tip = self.make_tip('abc123')
        sleep = MagicMock()
        result = wait_for_settlement(tip.pk, interval=1, timeout=2, gateway=make_gateway('abc123'),
                                     sleep=sleep, clock=itertools.count().__next__)
        self.assertEqual(result.status, Tip.STATUS_ERROR)
        self.assertTrue(sleep.called)

    def test_wait_for_settlement_stops_on_completion(self):
        """Polling stops as soon as the tip completes."""
        tip = self.make_tip('abc123', amount=300)
        sleep = MagicMock()
        result = wait_for_settlement(tip.pk, interval=1, timeout=60, gateway=make_gateway('abc123', status='completed'),
                                     sleep=sleep, clock=itertools.count().__next__)
        self.assertEqual(result.status, Tip.STATUS_COMPLETED)
        sleep.assert_not_called()


class StatsTests(BaseTestCase):
    def test_totals_and_recent(self):
        """Totals and recent tips only count completed tips, newest first."""
        old = self.make_tip('a', amount=100, supporter_name='Old', status=Tip.STATUS_COMPLETED)
        Tip.objects.filter(pk=old.pk).update(created_at=timezone.now() - timedelta(hours=1))
        self.make_tip('b', amount=200, supporter_name='New', status=Tip.STATUS_COMPLETED)
        self.make_tip('c', amount=5000, supporter_name='Pending')
        self.assertEqual(page_totals(self.page), (2, 300))
        names = [t.supporter_name for t in recent_tips(self.page, limit=10)]
        self.assertEqual(names, ['New', 'Old'])

    def test_top_supporter_sums_and_breaks_ties_by_name(self):
        """Top supporter is by summed amount; ties go to the alphabetically first name."""
        self.make_tip('a', amount=300, supporter_name='Zed', status=Tip.STATUS_COMPLETED)
        self.make_tip('b', amount=100, supporter_name='Amy', status=Tip.STATUS_COMPLETED)
        self.make_tip('c', amount=200, supporter_name='Amy', status=Tip.STATUS_COMPLETED)
        self.assertEqual(top_supporter(self.page), {'name': 'Amy', 'total': 300})
        self.make_tip('d', amount=1, supporter_name='Zed', status=Tip.STATUS_COMPLETED)
        self.assertEqual(top_supporter(self.page), {'name': 'Zed', 'total': 301})

    def test_empty_page(self):
        stats = page_stats(self.page)
        self.assertIsNone(stats['top_supporter'])
        self.assertEqual(stats['tip_count'], 0)
        self.assertIsNone(stats['progress'])

    def test_campaign_progress(self):
        """Pages with a target report percentage raised, capped at 100."""
        campaign = TippingPage.objects.create(username='roof-fund', kind=TippingPage.KIND_CAMPAIGN,
                                              display_name='Roof', lightning_address='roof@ln', target_amount=1000)
        self.make_tip('r1', amount=250, page=campaign, status=Tip.STATUS_COMPLETED)
        self.assertEqual(page_stats(campaign)['progress'], 25)
        self.make_tip('r2', amount=5000, page=campaign, status=Tip.STATUS_COMPLETED)
        self.assertEqual(page_stats(campaign)['progress'], 100)


class PaymentViewsTests(BaseTestCase):
    @patch('tipjar.views.get_gateway')
    def test_create_payment(self, mock_get_gateway):
        """POST create returns invoice material for a new pending tip."""
        mock_get_gateway.return_value = make_gateway('abc123')
        resp = self.client.post(reverse('create_payment'), data=json.dumps({
            'amount': 5000, 'pageId': self.page.pk, 'supporterName': 'Alice', 'destinationAddress': 'p@ln',
        }), content_type='application/json')
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data['externalId'], 'abc123')
        self.assertEqual(data['invoiceRequest'], 'lnbc50u1pexample')
        self.assertEqual(data['invoiceUri'], 'lightning:lnbc50u1pexample')
        self.assertEqual(data['status'], 'pending')
        self.assertEqual(Tip.objects.get(pk=data['id']).supporter_name, 'Alice')

    @patch('tipjar.views.get_gateway')
    def test_create_payment_errors(self, mock_get_gateway):
        """Validation, unknown page, bad JSON and gateway failures map to 400/404/400/502."""
        gateway = make_gateway()
        mock_get_gateway.return_value = gateway
        url = reverse('create_payment')

        resp = self.client.post(url, data=json.dumps({'amount': 0, 'pageId': self.page.pk, 'supporterName': 'A'}),
                                content_type='application/json')
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post(url, data=json.dumps({'amount': 500, 'pageId': 999999, 'supporterName': 'A'}),
                                content_type='application/json')
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post(url, data='not json', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

        for bad_page_id in (True, 1.5, '1.5', [1]):
            resp = self.client.post(url, data=json.dumps({'amount': 500, 'pageId': bad_page_id, 'supporterName': 'A'}),
                                    content_type='application/json')
            self.assertEqual(resp.status_code, 400)
        gateway.create_charge.assert_not_called()

        gateway.create_charge.side_effect = GatewayError('down')
        resp = self.client.post(url, data=json.dumps({'amount': 500, 'pageId': self.page.pk, 'supporterName': 'A'}),
                                content_type='application/json')
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(Tip.objects.count(), 0)

    @patch('tipjar.views.get_gateway')
    def test_payment_status_polls_gateway(self, mock_get_gateway):
        """The status endpoint drives completion from the processor's answer."""
        mock_get_gateway.return_value = make_gateway('abc123', status='completed')
        tip = self.make_tip('abc123', amount=5000)
        resp = self.client.get(reverse('payment_status', args=[tip.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {'id': tip.pk, 'externalId': 'abc123', 'status': 'completed', 'amount': 5000})

        resp = self.client.get(reverse('payment_status_by_charge', args=['abc123']))
        self.assertEqual(resp.json()['status'], 'completed')

    @patch('tipjar.views.get_gateway')
    def test_payment_status_errors(self, mock_get_gateway):
        """Unknown tips are 404; processor failures are 502."""
        gateway = make_gateway('abc123')
        gateway.fetch_charge_status.side_effect = GatewayError('down')
        mock_get_gateway.return_value = gateway
        self.assertEqual(self.client.get(reverse('payment_status', args=[999999])).status_code, 404)
        tip = self.make_tip('abc123')
        self.assertEqual(self.client.get(reverse('payment_status', args=[tip.pk])).status_code, 502)


@override_settings(LIGHTNING_WEBHOOK_SECRET=WEBHOOK_SECRET, LIGHTNING_WEBHOOK_SIGNATURE_HEADER='X-Webhook-Signature')
class WebhookTests(BaseTestCase):
    def post_webhook(self, payload, signature=None):
        body = json.dumps(payload).encode()
        if signature is None:
            signature = sign_webhook_body(body, WEBHOOK_SECRET)
        return self.client.post(reverse('payment_webhook'), data=body, content_type='application/json',
                                HTTP_X_WEBHOOK_SIGNATURE=signature)

    def test_non_ascii_signature_rejected(self):
        """A non-ASCII signature header gets 401 and changes nothing."""
        self.make_tip('abc123', amount=5000)
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'abc123'}}, signature='caf\xe9')
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(Tip.objects.get(payment_id='abc123').status, Tip.STATUS_PENDING)

    def test_paid_webhook_completes_tip(self):
        """The processor's 'paid' status completes the tip, as it does on the poll path."""
        self.make_tip('abc123', amount=5000)
        resp = self.post_webhook({'status': 'paid', 'data': {'id': 'abc123'}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'completed')
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)

    def test_unrecognised_status_leaves_tip_pending(self):
        self.make_tip('abc123')
        resp = self.post_webhook({'status': 'refunded', 'data': {'id': 'abc123'}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Tip.objects.get(payment_id='abc123').status, Tip.STATUS_PENDING)

    def test_unknown_charge_falls_back_to_internal_id(self):
        """An unknown data.id with a valid internalId still reaches the tip."""
        tip = self.make_tip('abc123', amount=800)
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'other'}, 'internalId': str(tip.reference)})
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn('ignored', resp.json())
        tip.refresh_from_db()
        self.assertEqual(tip.status, Tip.STATUS_COMPLETED)

    def test_completed_webhook_credits_page(self):
        """A signed completed webhook completes the tip and credits the page."""
        self.make_tip('abc123', amount=5000)
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'abc123'}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'completed')
        self.assertEqual(Tip.objects.get(payment_id='abc123').status, Tip.STATUS_COMPLETED)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)

    def test_duplicate_webhook_credits_once(self):
        """Redelivery of the same webhook leaves the total at one credit."""
        self.make_tip('abc123', amount=5000)
        self.post_webhook({'status': 'completed', 'data': {'id': 'abc123'}})
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'abc123'}})
        self.assertEqual(resp.status_code, 200)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 5000)
        self.assertEqual(self.page.tip_count, 1)

    def test_invalid_signature_rejected(self):
        """Bad signatures get 401 and change nothing."""
        self.make_tip('abc123', amount=5000)
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'abc123'}}, signature='deadbeef')
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(Tip.objects.get(payment_id='abc123').status, Tip.STATUS_PENDING)
        self.page.refresh_from_db()
        self.assertEqual(self.page.total_received, 0)

    def test_missing_signature_rejected(self):
        self.make_tip('abc123')
        resp = self.client.post(reverse('payment_webhook'), data=json.dumps({'status': 'completed', 'data': {'id': 'abc123'}}),
                                content_type='application/json')
        self.assertEqual(resp.status_code, 401)

    def test_internal_id_shape(self):
        """Webhooks identifying the tip by internalId are accepted."""
        tip = self.make_tip('abc123', amount=800)
        resp = self.post_webhook({'status': 'completed', 'internalId': str(tip.reference)})
        self.assertEqual(resp.status_code, 200)
        tip.refresh_from_db()
        self.assertEqual(tip.status, Tip.STATUS_COMPLETED)

    def test_unknown_charge_is_acknowledged(self):
        """Unknown charges are acknowledged so the processor stops retrying."""
        resp = self.post_webhook({'status': 'completed', 'data': {'id': 'ghost'}})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json().get('ignored'))

    def test_malformed_body(self):
        """Signed but unusable bodies get 400."""
        resp = self.post_webhook({'status': 'completed'})
        self.assertEqual(resp.status_code, 400)


class PageViewsTests(BaseTestCase):
    def _capture_render(self):
        """Helper: patch render to capture template context without templates."""
        from django.http import HttpResponse

        class _R:
            last = {}

            def __call__(self, request, template, context=None, *args, **kwargs):
                self.last = context or {}
                return HttpResponse('OK', status=kwargs.get('status', 200))
        return _R()

    def test_page_list(self):
        r = self._capture_render()
        with patch('tipjar.views.render', r):
            resp = self.client.get(reverse('page_list') + '?kind=creator')
            self.assertEqual(resp.status_code, 200)
            self.assertIn(self.page, list(r.last['pages']))

    def test_tipping_page_shows_stats(self):
        """The public page carries the page statistics."""
        self.make_tip('a', amount=100, supporter_name='Amy', status=Tip.STATUS_COMPLETED)
        r = self._capture_render()
        with patch('tipjar.views.render', r):
            resp = self.client.get(reverse('tipping_page', args=['Alice']))
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(r.last['stats']['total_received'], 100)
            self.assertEqual(r.last['stats']['top_supporter']['name'], 'Amy')

    def test_tipping_page_renders_template(self):
        """The public page renders with the real template."""
        resp = self.client.get(reverse('tipping_page', args=['alice']))
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, 'Alice')

    def test_tipping_page_suspended(self):
        self.page.suspended = True
        self.page.save()
        r = self._capture_render()
        with patch('tipjar.views.render', r):
            self.client.get(reverse('tipping_page', args=['alice']))
            self.assertIn('error_title', r.last)

    def test_tipping_page_404(self):
        resp = self.client.get(reverse('tipping_page', args=['nobody']))
        self.assertEqual(resp.status_code, 404)

    def test_page_stats_json(self):
        self.make_tip('a', amount=100, supporter_name='Amy', status=Tip.STATUS_COMPLETED)
        self.make_tip('b', amount=900)
        resp = self.client.get(reverse('page_stats', args=['alice']))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data['tipCount'], 1)
        self.assertEqual(data['totalReceived'], 100)
        self.assertEqual(data['topSupporter'], {'name': 'Amy', 'total': 100})
        self.assertEqual(len(data['recentTips']), 1)

    def test_dashboard_requires_login(self):
        resp = self.client.get(reverse('dashboard'))
        self.assertEqual(resp.status_code, 302)

    def test_dashboard_lists_own_pages(self):
        """Dashboard shows the owner's pages with pending counts."""
        TippingPage.objects.create(username='someone', display_name='Else', lightning_address='x@ln')
        self.make_tip('p1')
        self.client.force_login(self.user)
        r = self._capture_render()
        with patch('tipjar.views.render', r):
            resp = self.client.get(reverse('dashboard'))
            self.assertEqual(resp.status_code, 200)
            self.assertEqual([row['page'] for row in r.last['rows']], [self.page])
            self.assertEqual(r.last['rows'][0]['pending_count'], 1)

    def test_update_page(self):
        """Owners can update display name, bio and minimum tip with validation."""
        url = reverse('update_page', args=['alice'])
        resp = self.client.post(url, data=json.dumps({'display_name': 'X'}), content_type='application/json')
        self.assertEqual(resp.status_code, 401)

        self.client.force_login(self.user)
        resp = self.client.post(url, data=json.dumps({'display_name': ''}), content_type='application/json')
        self.assertFalse(resp.json()['success'])
        resp = self.client.post(url, data=json.dumps({'minimum_tip': 0}), content_type='application/json')
        self.assertFalse(resp.json()['success'])
        resp = self.client.post(url, data=json.dumps({'display_name': 'Alice B', 'bio': 'Hi', 'minimum_tip': 500}),
                                content_type='application/json')
        self.assertTrue(resp.json()['success'])
        self.page.refresh_from_db()
        self.assertEqual((self.page.display_name, self.page.bio, self.page.minimum_tip), ('Alice B', 'Hi', 500))

    def test_update_page_other_owner(self):
        other = User.objects.create_user(username='other@example.com', password='pass12345')
        self.client.force_login(other)
        resp = self.client.post(reverse('update_page', args=['alice']), data=json.dumps({'bio': 'hacked'}),
                                content_type='application/json')
        self.assertEqual(resp.status_code, 404)


class ManagementCommandTests(BaseTestCase):
    @patch('tipjar.management.commands.expire_stale_tips.get_gateway')
    def test_expire_stale_tips(self, mock_get_gateway):
        """Overdue pending tips are settled from the processor, or marked error."""
        def fetch(external_id):
            if external_id == 'down':
                raise GatewayError('down')
            return ChargeStatus(external_id=external_id, status='expired', amount=None, created_at=None, completed_at=None)

        gateway = MagicMock()
        gateway.fetch_charge_status.side_effect = fetch
        mock_get_gateway.return_value = gateway

        expired = self.make_tip('gone')
        unreachable = self.make_tip('down')
        fresh = self.make_tip('fresh')
        done = self.make_tip('done', status=Tip.STATUS_COMPLETED)
        Tip.objects.filter(pk__in=[expired.pk, unreachable.pk, done.pk]).update(
            expires_at=timezone.now() - timedelta(hours=1))

        out = io.StringIO()
        call_command('expire_stale_tips', stdout=out, stderr=io.StringIO())
        self.assertIn('Settled 2 stale tips', out.getvalue())

        expired.refresh_from_db()
        unreachable.refresh_from_db()
        fresh.refresh_from_db()
        done.refresh_from_db()
        self.assertEqual(expired.status, Tip.STATUS_EXPIRED)
        self.assertEqual(unreachable.status, Tip.STATUS_ERROR)
        self.assertEqual(fresh.status, Tip.STATUS_PENDING)
        self.assertEqual(done.status, Tip.STATUS_COMPLETED)

    @patch('tipjar.payments.get_gateway')
    def test_watch_tip(self, mock_get_gateway):
        """watch_tip polls until the tip completes."""
        mock_get_gateway.return_value = make_gateway('abc123', status='completed')
        tip = self.make_tip('abc123')
        out = io.StringIO()
        call_command('watch_tip', str(tip.pk), '--interval', '0', '--timeout', '1', stdout=out)
        self.assertIn('completed', out.getvalue())


class AdapterTests(TestCase):
    def test_get_login_redirect_url(self):
        """Owners land on the dashboard after Google sign-in."""
        from .adapters import TipjarSocialAccountAdapter
        self.assertEqual(TipjarSocialAccountAdapter().get_login_redirect_url(None), '/dashboard/')

    def test_save_user_claims_pages_by_email(self):
        """save_user stores the Google email and claims unowned pages registered to it."""
        from .adapters import TipjarSocialAccountAdapter
        adapter = TipjarSocialAccountAdapter()
        user = User.objects.create_user('u1', email='')
        page = TippingPage.objects.create(username='claimme', display_name='Claim', lightning_address='c@ln',
                                          contact_email='ABC@example.com')
        sl = type('SL', (), {})()
        sl.account = type('A', (), {'extra_data': {'email': 'abc@example.com'}})()
        sl.user = user
        with patch('tipjar.adapters.DefaultSocialAccountAdapter.save_user', return_value=user):
            adapter.save_user(MagicMock(), sl)
        user.refresh_from_db()
        page.refresh_from_db()
        self.assertEqual(user.email, 'abc@example.com')
        self.assertEqual(page.owner, user)
