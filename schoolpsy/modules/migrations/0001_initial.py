# Generated manually for the modules app

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='InstalledModule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('module_key', models.CharField(help_text='Unique module key, equal to the module directory name', max_length=100, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('version', models.CharField(help_text='Semantic version (e.g., 1.0.0)', max_length=20)),
                ('author', models.CharField(blank=True, max_length=200)),
                ('category', models.CharField(max_length=100)),
                ('table_name', models.CharField(help_text='Result table owned by this module', max_length=63)),
                ('status', models.CharField(choices=[('registered', 'Registered'), ('active', 'Active'), ('inactive', 'Inactive')], default='registered', max_length=20)),
                ('installed_at', models.DateTimeField(blank=True, null=True)),
                ('activated_at', models.DateTimeField(blank=True, null=True)),
                ('deactivated_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'db_table': 'schoolpsy_modules',
                'ordering': ['name'],
                'indexes': [
                    models.Index(fields=['status'], name='schoolpsy_mod_status_idx'),
                    models.Index(fields=['category', 'status'], name='schoolpsy_mod_cat_status_idx'),
                ],
            },
        ),
    ]
