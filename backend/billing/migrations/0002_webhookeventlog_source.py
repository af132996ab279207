from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('billing', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='webhookeventlog',
            name='source',
            field=models.CharField(choices=[('provider', 'Billing provider'), ('stripe', 'Stripe')], default='provider', max_length=16),
        ),
        migrations.AlterField(
            model_name='webhookeventlog',
            name='event_type',
            field=models.CharField(blank=True, max_length=255),
        ),
    ]
