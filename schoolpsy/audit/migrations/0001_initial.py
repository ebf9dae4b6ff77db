# Generated manually for the audit app

import django.core.serializers.json
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='AuditEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('module_key', models.CharField(db_index=True, help_text='Module the action concerns', max_length=100)),
                ('record_id', models.BigIntegerField(blank=True, help_text='Result record id for result mutations', null=True)),
                ('psychologist_id', models.BigIntegerField(blank=True, db_index=True, help_text='Acting psychologist (tenant)', null=True)),
                ('action', models.CharField(choices=[('create', 'Create'), ('update', 'Update'), ('delete', 'Delete'), ('register', 'Register'), ('install', 'Install'), ('activate', 'Activate'), ('deactivate', 'Deactivate'), ('uninstall', 'Uninstall'), ('register_error', 'Register Error'), ('install_error', 'Install Error'), ('activate_error', 'Activate Error'), ('deactivate_error', 'Deactivate Error'), ('uninstall_error', 'Uninstall Error')], db_index=True, max_length=30)),
                ('description', models.TextField(blank=True)),
                ('details', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('user_agent', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                'verbose_name': 'Audit Entry',
                'verbose_name_plural': 'Audit Entries',
                'db_table': 'schoolpsy_audit_entries',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['module_key', 'record_id'], name='schoolpsy_aud_record_idx'),
                    models.Index(fields=['psychologist_id', 'created_at'], name='schoolpsy_aud_tenant_idx'),
                ],
            },
        ),
    ]
