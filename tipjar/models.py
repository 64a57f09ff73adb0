"""
Tipjar Models

This module contains the core data models for the Tipjar application:
- TippingPage: A public page (creator, cause or campaign) that receives tips,
  carrying running totals of completed tips
- Tip: One attempted Lightning payment from a supporter to a page

Tips are an append-only record of payment attempts. A tip is created pending
once the payment processor has issued a charge and only ever moves to one
terminal status. Moving a tip to completed and adding its amount to the page
totals happen in one database transaction.
"""

import uuid

from django.contrib.auth.models import User
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from .exceptions import TipConflict
from .validators import validate_lightning_address, validate_username


class TippingPage(models.Model):
    """
    A public page supporters can tip.

    Creators, causes and crowdfunding campaigns share the same payment flow,
    so they are one model distinguished by ``kind``. Causes and campaigns
    usually set a ``target_amount``.

    Attributes:
        owner: User who manages the page (null for pages created by staff)
        username: Unique slug used in the public URL
        kind: creator, cause or campaign
        display_name: Public name shown to supporters
        bio: Optional description
        lightning_address: Payout destination handed to the payment processor
        minimum_tip: Smallest accepted tip in sats
        target_amount: Funding goal in sats (causes and campaigns)
        contact_email: Used to link the page to an owner on first login
        total_received: Sum of completed tip amounts in sats
        tip_count: Number of completed tips
        suspended: Set by staff to stop accepting tips
        deactivated: Set by the owner to stop accepting tips
    """
    KIND_CREATOR = 'creator'
    KIND_CAUSE = 'cause'
    KIND_CAMPAIGN = 'campaign'
    KIND_CHOICES = [
        (KIND_CREATOR, 'Creator'),
        (KIND_CAUSE, 'Cause'),
        (KIND_CAMPAIGN, 'Campaign'),
    ]

    owner = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='tipping_pages')
    username = models.CharField(max_length=30, unique=True, validators=[validate_username])
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default=KIND_CREATOR)
    display_name = models.CharField(max_length=100)
    bio = models.TextField(blank=True)
    lightning_address = models.CharField(max_length=255, blank=True, validators=[validate_lightning_address])
    minimum_tip = models.PositiveIntegerField(default=1000, validators=[MinValueValidator(1)])
    target_amount = models.PositiveBigIntegerField(null=True, blank=True)
    contact_email = models.EmailField(blank=True)
    total_received = models.PositiveBigIntegerField(default=0)
    tip_count = models.PositiveIntegerField(default=0)
    suspended = models.BooleanField(default=False)
    deactivated = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.display_name

    def save(self, *args, **kwargs):
        self.username = self.username.strip().lower()
        super().save(*args, **kwargs)

    @property
    def accepting_tips(self):
        """True when the page is active and has somewhere to send payments."""
        return bool(self.lightning_address) and not self.suspended and not self.deactivated


class TipQuerySet(models.QuerySet):
    """Lookups used by the payment flow and the public statistics."""

    def pending(self):
        return self.filter(status=Tip.STATUS_PENDING)

    def completed(self):
        return self.filter(status=Tip.STATUS_COMPLETED)

    def get_by_payment_id(self, payment_id):
        return self.get(payment_id=payment_id)

    def completed_for_page(self, page, limit=None):
        """Completed tips for a page, newest first."""
        qs = self.completed().filter(page=page).order_by('-created_at', '-id')
        if limit is not None:
            qs = qs[:limit]
        return qs

    def sum_completed_for_page(self, page):
        return self.completed().filter(page=page).aggregate(total=Sum('amount'))['total'] or 0


class Tip(models.Model):
    """
    One attempted payment from a supporter to a page.

    Status moves pending -> completed, pending -> expired or pending -> error
    and never changes again. Transitions are conditional updates on
    ``status='pending'`` so two concurrent observers of the same payment
    (webhook and client poll) cannot both apply it.

    Attributes:
        page: Page being tipped
        reference: Our identifier, sent to the processor as internalId
        payment_id: Charge identifier assigned by the processor
        amount: Tip amount in sats
        supporter_name: Name shown on the page once the tip completes
        message: Optional message from the supporter
        invoice_request: BOLT11 payment request
        invoice_uri: ``lightning:`` URI for QR codes
        expires_at: When the processor will expire the charge
        status: pending, completed, expired or error
        created_at: When the tip was recorded
        completed_at: When the payment was observed, only for completed tips
    """
    STATUS_PENDING = 'pending'
    STATUS_COMPLETED = 'completed'
    STATUS_EXPIRED = 'expired'
    STATUS_ERROR = 'error'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_EXPIRED, 'Expired'),
        (STATUS_ERROR, 'Error'),
    ]
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_EXPIRED, STATUS_ERROR)

    page = models.ForeignKey(TippingPage, on_delete=models.PROTECT, related_name='tips')
    reference = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    payment_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    amount = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    supporter_name = models.CharField(max_length=100)
    message = models.TextField(blank=True)
    invoice_request = models.TextField(blank=True)
    invoice_uri = models.TextField(blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    objects = TipQuerySet.as_manager()

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='tip_amount_positive'),
            models.CheckConstraint(
                condition=(
                    Q(status='completed', completed_at__isnull=False)
                    | (~Q(status='completed') & Q(completed_at__isnull=True))
                ),
                name='tip_completed_at_matches_status',
            ),
        ]
        indexes = [
            models.Index(fields=['page', 'status', 'created_at'], name='tip_page_status_created_idx'),
            models.Index(fields=['status', 'created_at'], name='tip_status_created_idx'),
        ]

    def __str__(self):
        return f"{self.supporter_name} tipped {self.amount} sats to {self.page} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def is_overdue(self, now=None):
        """True for a pending tip whose charge expiry has passed."""
        if self.status != self.STATUS_PENDING or self.expires_at is None:
            return False
        return (now or timezone.now()) > self.expires_at

    def save(self, *args, **kwargs):
        if self.pk is not None:
            stored = Tip.objects.filter(pk=self.pk).values_list('payment_id', flat=True).first()
            if stored and stored != self.payment_id:
                raise ValueError("payment_id cannot change once assigned")
        super().save(*args, **kwargs)

    def _transition(self, status, completed_at=None):
        updated = Tip.objects.filter(pk=self.pk, status=self.STATUS_PENDING).update(
            status=status, completed_at=completed_at
        )
        if not updated:
            self.refresh_from_db()
            raise TipConflict(f"Tip {self.pk} is already {self.status}")
        return updated

    def mark_completed(self, completed_at=None):
        """
        Move a pending tip to completed and credit the page totals.

        Both writes share one transaction; a failure in either leaves the tip
        pending and the totals untouched.

        Raises:
            TipConflict: If the tip is no longer pending
        """
        completed_at = completed_at or timezone.now()
        with transaction.atomic():
            self._transition(self.STATUS_COMPLETED, completed_at=completed_at)
            TippingPage.objects.filter(pk=self.page_id).update(
                total_received=F('total_received') + self.amount,
                tip_count=F('tip_count') + 1,
            )
        self.refresh_from_db()

    def mark_expired(self):
        """Raises TipConflict if the tip is no longer pending."""
        self._transition(self.STATUS_EXPIRED)
        self.refresh_from_db()

    def mark_error(self):
        """Raises TipConflict if the tip is no longer pending."""
        self._transition(self.STATUS_ERROR)
        self.refresh_from_db()
