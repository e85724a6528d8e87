from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='SavedSession',
            fields=[
                (
                    'id',
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name='ID',
                    ),
                ),
                (
                    'key',
                    models.CharField(
                        help_text='Session key, usually derived from the user id',
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    'payload',
                    models.JSONField(
                        default=dict, help_text='Serialized SessionState snapshot'
                    ),
                ),
                (
                    'writer',
                    models.CharField(
                        blank=True,
                        default='',
                        help_text='Device id of the last writer, used to skip echoes',
                        max_length=64,
                    ),
                ),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Saved Session',
                'verbose_name_plural': 'Saved Sessions',
                'ordering': ['-updated_at'],
            },
        ),
    ]
