import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('orders', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='PaymentAttempt',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('merchant_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('checkout_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('phone_number', models.CharField(max_length=16)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('PROCESSING', 'Processing'), ('COMPLETED', 'Completed'), ('FAILED', 'Failed'), ('CANCELLED', 'Cancelled')], db_index=True, default='PENDING', max_length=16)),
                ('result_code', models.CharField(blank=True, default='', max_length=32)),
                ('result_desc', models.CharField(blank=True, default='', max_length=512)),
                ('failure_reason', models.CharField(blank=True, choices=[('initiate_failed', 'Initiate failed'), ('rejected', 'Rejected by gateway'), ('timeout', 'No answer from gateway')], default='', max_length=32)),
                ('receipt_number', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('confirmed_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('confirmed_phone', models.CharField(blank=True, default='', max_length=16)),
                ('raw_callback', models.JSONField(blank=True, null=True)),
                ('last_query_payload', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payment_attempts', to='orders.order')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
        migrations.AddConstraint(
            model_name='paymentattempt',
            constraint=models.UniqueConstraint(condition=models.Q(('status__in', ['PENDING', 'PROCESSING'])), fields=('order',), name='payments_one_active_attempt_per_order'),
        ),
        migrations.CreateModel(
            name='PaymentAnomaly',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('unmatched_callback', 'Callback for unknown attempt'), ('success_after_cancel', 'Success reported after cancel'), ('success_after_failure', 'Success reported after failure'), ('amount_mismatch', 'Confirmed amount differs'), ('callback_processing_error', 'Callback processing error')], db_index=True, max_length=32)),
                ('merchant_request_id', models.CharField(blank=True, default='', max_length=64)),
                ('checkout_request_id', models.CharField(blank=True, default='', max_length=64)),
                ('detail', models.CharField(blank=True, default='', max_length=512)),
                ('payload', models.JSONField(blank=True, null=True)),
                ('resolved', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('attempt', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='anomalies', to='payments.paymentattempt')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
    ]
