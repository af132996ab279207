from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='WebhookEventLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('event_id', models.CharField(max_length=255, unique=True)),
                ('event_type', models.CharField(blank=True, max_length=64)),
                ('user_id', models.CharField(blank=True, help_text='Provider app_user_id the event targets; empty for TEST events.', max_length=255, null=True)),
                ('payload', models.JSONField(blank=True, null=True)),
                ('payload_hash', models.CharField(blank=True, help_text='SHA256 of the canonical payload for drift detection.', max_length=64)),
                ('status', models.CharField(choices=[('received', 'Received'), ('processing', 'Processing'), ('processed', 'Processed'), ('ignored', 'Ignored'), ('failed', 'Failed')], default='received', max_length=20)),
                ('success', models.BooleanField(default=False, help_text='True once the event has been fully processed.')),
                ('error_message', models.TextField(blank=True, null=True)),
                ('attempts', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Webhook event log',
                'verbose_name_plural': 'Webhook event logs',
                'db_table': 'billing_webhook_event_log',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='IdempotencyKey',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('key', models.CharField(max_length=64, unique=True)),
                ('request_hash', models.CharField(help_text='SHA256 of the canonical request body.', max_length=64)),
                ('response_data', models.TextField(blank=True, help_text='Rendered response body; empty while the request is in flight.', null=True)),
                ('status_code', models.PositiveIntegerField(blank=True, null=True)),
                ('content_type', models.CharField(blank=True, max_length=128)),
                ('method', models.CharField(blank=True, max_length=8)),
                ('path', models.CharField(blank=True, max_length=255)),
                ('expires_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Idempotency key',
                'verbose_name_plural': 'Idempotency keys',
                'db_table': 'billing_idempotency_key',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='RateLimitBucket',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('bucket_id', models.CharField(max_length=255, unique=True)),
                ('identifier', models.CharField(max_length=255)),
                ('category', models.CharField(max_length=32)),
                ('request_count', models.PositiveIntegerField(default=0)),
                ('window_start', models.DateTimeField()),
                ('window_end', models.DateTimeField()),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Rate limit bucket',
                'verbose_name_plural': 'Rate limit buckets',
                'db_table': 'billing_rate_limit_bucket',
                'ordering': ['-window_start'],
            },
        ),
        migrations.CreateModel(
            name='BillingAuditLog',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('event_type', models.CharField(help_text='Classification of the billing event.', max_length=100)),
                ('user_id', models.CharField(blank=True, help_text='Account the event applied to.', max_length=255)),
                ('provider_event_id', models.CharField(blank=True, help_text='Provider webhook event identifier tied to the event.', max_length=255)),
                ('actor', models.CharField(blank=True, help_text='Auth user or system actor responsible.', max_length=255)),
                ('details', models.JSONField(blank=True, help_text='Structured data describing the event.', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Billing audit log',
                'verbose_name_plural': 'Billing audit logs',
                'db_table': 'billing_audit_log',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddIndex(
            model_name='webhookeventlog',
            index=models.Index(fields=['status'], name='webhook_event_status_idx'),
        ),
        migrations.AddIndex(
            model_name='webhookeventlog',
            index=models.Index(fields=['event_type'], name='webhook_event_type_idx'),
        ),
        migrations.AddIndex(
            model_name='webhookeventlog',
            index=models.Index(fields=['user_id', '-created_at'], name='webhook_event_user_idx'),
        ),
        migrations.AddIndex(
            model_name='idempotencykey',
            index=models.Index(fields=['expires_at'], name='billing_idempo_expires_idx'),
        ),
        migrations.AddIndex(
            model_name='ratelimitbucket',
            index=models.Index(fields=['window_end'], name='rate_limit_window_end_idx'),
        ),
        migrations.AddIndex(
            model_name='ratelimitbucket',
            index=models.Index(fields=['identifier', 'category'], name='rate_limit_ident_cat_idx'),
        ),
        migrations.AddIndex(
            model_name='billingauditlog',
            index=models.Index(fields=['user_id', 'event_type'], name='billing_audit_user_event_idx'),
        ),
        migrations.AddIndex(
            model_name='billingauditlog',
            index=models.Index(fields=['provider_event_id'], name='billing_audit_provider_idx'),
        ),
    ]
