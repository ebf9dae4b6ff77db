"""
Tests for audit trail models.
"""

from django.test import TestCase

from schoolpsy.audit.exceptions import AuditEntryImmutable
from schoolpsy.audit.models import AuditEntry


class AuditEntryTestCase(TestCase):
    """Test cases for AuditEntry."""

    def setUp(self):
        self.entry = AuditEntry.objects.create(
            module_key='anxiety_test',
            record_id=7,
            psychologist_id=3,
            action=AuditEntry.Action.CREATE,
            details={'record': {'raw_score': 14}},
        )

    def test_str(self):
        """Test the string form names action and target."""
        self.assertTrue(str(self.entry).startswith('create on anxiety_test#7 at '))

    def test_entries_cannot_be_modified(self):
        """Test saving an existing entry raises."""
        self.entry.description = 'rewritten'

        with self.assertRaises(AuditEntryImmutable):
            self.entry.save()

    def test_entries_cannot_be_deleted(self):
        """Test deleting an entry or a queryset raises."""
        with self.assertRaises(AuditEntryImmutable):
            self.entry.delete()

        with self.assertRaises(AuditEntryImmutable):
            AuditEntry.objects.all().delete()

        with self.assertRaises(AuditEntryImmutable):
            AuditEntry.objects.filter(pk=self.entry.pk).update(description='x')

        self.assertEqual(AuditEntry.objects.count(), 1)

    def test_failures(self):
        """Test failed transitions are recognised."""
        failed = AuditEntry.objects.create(module_key='anxiety_test', action=AuditEntry.Action.INSTALL_ERROR)

        self.assertTrue(failed.is_failure)
        self.assertFalse(self.entry.is_failure)
        self.assertEqual(list(AuditEntry.objects.failures()), [failed])

    def test_queryset_filters(self):
        """Test the module, record and tenant filters."""
        AuditEntry.objects.create(module_key='memory_test', record_id=7, psychologist_id=4, action='create')

        self.assertEqual(AuditEntry.objects.for_module('anxiety_test').count(), 1)
        self.assertEqual(AuditEntry.objects.for_record('memory_test', 7).count(), 1)
        self.assertEqual(AuditEntry.objects.for_psychologist(3).get(), self.entry)
        self.assertEqual(AuditEntry.objects.for_action('create').count(), 2)
