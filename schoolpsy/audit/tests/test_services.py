"""
Tests for the audit log service.
"""

import datetime
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase

from schoolpsy.audit.models import AuditEntry
from schoolpsy.audit.services import AuditLog
from schoolpsy.core.context import Actor


class AuditLogTestCase(TestCase):
    """Test cases for AuditLog."""

    def setUp(self):
        self.audit = AuditLog()
        self.actor = Actor(psychologist_id=3, ip_address='10.0.0.5', user_agent='browser')

    def test_record_with_actor(self):
        """Test entries carry the actor's identity and request context."""
        entry = self.audit.record(
            'update', 'anxiety_test', actor=self.actor, record_id=7,
            description='Updated result #7', details={'raw_score': [5, 25]},
        )

        entry.refresh_from_db()
        self.assertEqual(entry.psychologist_id, 3)
        self.assertEqual(entry.ip_address, '10.0.0.5')
        self.assertEqual(entry.user_agent, 'browser')
        self.assertEqual(entry.details, {'raw_score': [5, 25]})

    def test_record_system_action(self):
        """Test entries without actor are system actions."""
        entry = self.audit.record('register', 'anxiety_test')

        self.assertIsNone(entry.psychologist_id)
        self.assertIsNone(entry.ip_address)
        self.assertEqual(entry.details, {})

    def test_dates_in_details(self):
        """Test dates in details are serialised."""
        entry = self.audit.record(
            'delete', 'anxiety_test', actor=self.actor, record_id=7,
            details={'record': {'test_date': datetime.date(2024, 3, 1)}},
        )

        entry.refresh_from_db()
        self.assertEqual(entry.details['record']['test_date'], '2024-03-01')

    def test_record_safely_logs_failures(self):
        """Test record_safely returns None and warns when the write fails."""
        with patch.object(AuditEntry, 'save', side_effect=DatabaseError('disk full')):
            with self.assertLogs('schoolpsy.audit.services', level='WARNING') as logs:
                result = self.audit.record_safely('create', 'anxiety_test', actor=self.actor)

        self.assertIsNone(result)
        self.assertIn('disk full', logs.output[0])
        self.assertEqual(AuditEntry.objects.count(), 0)

    def test_history(self):
        """Test history is newest first, limited and filterable."""
        for record_id in (1, 2, 2):
            self.audit.record('create', 'anxiety_test', actor=self.actor, record_id=record_id)
        self.audit.record('create', 'anxiety_test', actor=Actor(psychologist_id=4), record_id=2)
        self.audit.record('install', 'memory_test')

        history = self.audit.history('anxiety_test')
        self.assertEqual(len(history), 4)
        self.assertEqual(history[0].psychologist_id, 4)

        self.assertEqual(len(self.audit.history('anxiety_test', limit=2)), 2)
        self.assertEqual(len(self.audit.history('anxiety_test', record_id=2)), 3)
        self.assertEqual(len(self.audit.history('anxiety_test', record_id=2, psychologist_id=3)), 2)
