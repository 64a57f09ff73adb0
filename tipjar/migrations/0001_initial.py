import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import tipjar.validators


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='TippingPage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('username', models.CharField(max_length=30, unique=True, validators=[tipjar.validators.validate_username])),
                ('kind', models.CharField(choices=[('creator', 'Creator'), ('cause', 'Cause'), ('campaign', 'Campaign')], default='creator', max_length=20)),
                ('display_name', models.CharField(max_length=100)),
                ('bio', models.TextField(blank=True)),
                ('lightning_address', models.CharField(blank=True, max_length=255, validators=[tipjar.validators.validate_lightning_address])),
                ('minimum_tip', models.PositiveIntegerField(default=1000, validators=[django.core.validators.MinValueValidator(1)])),
                ('target_amount', models.PositiveBigIntegerField(blank=True, null=True)),
                ('contact_email', models.EmailField(blank=True, max_length=254)),
                ('total_received', models.PositiveBigIntegerField(default=0)),
                ('tip_count', models.PositiveIntegerField(default=0)),
                ('suspended', models.BooleanField(default=False)),
                ('deactivated', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('owner', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='tipping_pages', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Tip',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reference', models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ('payment_id', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('amount', models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ('supporter_name', models.CharField(max_length=100)),
                ('message', models.TextField(blank=True)),
                ('invoice_request', models.TextField(blank=True)),
                ('invoice_uri', models.TextField(blank=True)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('expired', 'Expired'), ('error', 'Error')], default='pending', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('page', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='tips', to='tipjar.tippingpage')),
            ],
            options={
                'indexes': [
                    models.Index(fields=['page', 'status', 'created_at'], name='tip_page_status_created_idx'),
                    models.Index(fields=['status', 'created_at'], name='tip_status_created_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='tip_amount_positive'),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(('completed_at__isnull', False), ('status', 'completed')),
                            models.Q(models.Q(('status', 'completed'), _negated=True), ('completed_at__isnull', True)),
                            _connector='OR',
                        ),
                        name='tip_completed_at_matches_status',
                    ),
                ],
            },
        ),
    ]
