from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('accounts', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='user',
            name='past_due_since',
            field=models.DateTimeField(blank=True, help_text='When the account last entered past_due; the grace period runs from here.', null=True),
        ),
    ]
