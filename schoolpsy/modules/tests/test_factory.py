"""
Tests for the module instance factory and capability protocols.
"""

import shutil
import tempfile
from pathlib import Path

from django.test import SimpleTestCase

from schoolpsy.modules.base import BaseTestModule, Computer, Interpreter
from schoolpsy.modules.conf import DEFAULT_CATEGORIES
from schoolpsy.modules.exceptions import ModuleLoadError
from schoolpsy.modules.factory import ModuleInstanceFactory
from schoolpsy.modules.manifest import ManifestParser

from .utils import BUNDLED_MODULES, manifest_data, write_module


SCORING_MODULE = '''
from schoolpsy.modules.base import BaseTestModule


class DoublingTest(BaseTestModule):
    def compute(self, fields):
        return {'level': str(int(fields['score']) * 2)}
'''


class TrackingModule(BaseTestModule):
    """Counts lifecycle hook calls"""

    def __init__(self, descriptor):
        super().__init__(descriptor)
        self.initialize_calls = 0
        self.shutdown_calls = 0

    def initialize(self):
        super().initialize()
        self.initialize_calls += 1

    def shutdown(self):
        super().shutdown()
        self.shutdown_calls += 1


class ModuleInstanceFactoryTestCase(SimpleTestCase):
    """Test cases for ModuleInstanceFactory."""

    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.root, True)
        self.parser = ManifestParser(DEFAULT_CATEGORIES)

    def descriptor(self, key, **overrides):
        module_dir = write_module(self.root, key, data=manifest_data(key, **overrides), files={
            'scoring.py': SCORING_MODULE,
        })
        return self.parser.parse_file(module_dir / 'module.json')

    def test_default_module_has_no_capabilities(self):
        """Test modules without behaviour get a capability-less instance."""
        instance = ModuleInstanceFactory().create(self.descriptor('plain_test'))

        self.assertIsInstance(instance, BaseTestModule)
        self.assertNotIsInstance(instance, Computer)
        self.assertNotIsInstance(instance, Interpreter)
        self.assertTrue(instance.is_initialized)

    def test_registered_constructor_wins(self):
        """Test an explicit constructor takes precedence over the entry point."""
        factory = ModuleInstanceFactory({'coded_test': TrackingModule})

        instance = factory.create(self.descriptor('coded_test', entry_point='scoring.py:DoublingTest'))

        self.assertIsInstance(instance, TrackingModule)
        self.assertEqual(instance.initialize_calls, 1)

    def test_instances_are_cached(self):
        """Test the same instance is returned until invalidated."""
        factory = ModuleInstanceFactory({'coded_test': TrackingModule})
        descriptor = self.descriptor('coded_test')

        first = factory.create(descriptor)
        second = factory.create(descriptor)

        self.assertIs(first, second)
        self.assertIs(factory.cached('coded_test'), first)
        self.assertEqual(first.initialize_calls, 1)

    def test_invalidate_calls_shutdown(self):
        """Test invalidation shuts the instance down and forces a rebuild."""
        factory = ModuleInstanceFactory({'coded_test': TrackingModule})
        descriptor = self.descriptor('coded_test')
        first = factory.create(descriptor)

        factory.invalidate('coded_test')

        self.assertEqual(first.shutdown_calls, 1)
        self.assertIsNone(factory.cached('coded_test'))
        self.assertIsNot(factory.create(descriptor), first)

    def test_clear(self):
        """Test clear drops every cached instance."""
        factory = ModuleInstanceFactory({'coded_test': TrackingModule})
        instance = factory.create(self.descriptor('coded_test'))

        factory.clear()

        self.assertEqual(instance.shutdown_calls, 1)
        self.assertIsNone(factory.cached('coded_test'))

    def test_file_entry_point(self):
        """Test file.py:Class entry points load from the module directory."""
        instance = ModuleInstanceFactory().create(
            self.descriptor('doubling_test', entry_point='scoring.py:DoublingTest')
        )

        self.assertIsInstance(instance, Computer)
        self.assertEqual(instance.compute({'score': 4}), {'level': '8'})

    def test_dotted_entry_point(self):
        """Test dotted import paths are accepted."""
        instance = ModuleInstanceFactory().create(
            self.descriptor('dotted_test', entry_point='schoolpsy.modules.base.BaseTestModule')
        )

        self.assertIsInstance(instance, BaseTestModule)

    def test_missing_entry_point_file(self):
        """Test a missing entry point file is a load error."""
        with self.assertRaises(ModuleLoadError):
            ModuleInstanceFactory().create(self.descriptor('broken_test', entry_point='missing.py:Nothing'))

    def test_missing_entry_point_class(self):
        """Test a missing class is a load error."""
        with self.assertRaises(ModuleLoadError):
            ModuleInstanceFactory().create(self.descriptor('broken_test', entry_point='scoring.py:Nothing'))

    def test_entry_point_outside_module_directory(self):
        """Test entry points cannot escape the module directory."""
        with self.assertRaises(ModuleLoadError):
            ModuleInstanceFactory().create(self.descriptor('broken_test', entry_point='../scoring.py:DoublingTest'))

    def test_unimportable_dotted_path(self):
        """Test unknown dotted paths are a load error."""
        with self.assertRaises(ModuleLoadError):
            ModuleInstanceFactory().create(self.descriptor('broken_test', entry_point='nowhere.to.be.Found'))

    def test_failing_constructor(self):
        """Test constructor errors surface as load errors."""
        def explode(descriptor):
            raise RuntimeError("boom")

        with self.assertRaises(ModuleLoadError):
            ModuleInstanceFactory({'broken_test': explode}).create(self.descriptor('broken_test'))

    def test_unregister(self):
        """Test unregistering falls back to the default behaviour."""
        factory = ModuleInstanceFactory({'coded_test': TrackingModule})
        descriptor = self.descriptor('coded_test')
        factory.create(descriptor)

        factory.unregister('coded_test')

        self.assertNotIsInstance(factory.create(descriptor), TrackingModule)


class AnxietyTestModuleTestCase(SimpleTestCase):
    """Test cases for the bundled anxiety_test behaviour."""

    def setUp(self):
        parser = ManifestParser(DEFAULT_CATEGORIES)
        self.descriptor = parser.parse_file(BUNDLED_MODULES / 'anxiety_test' / 'module.json')
        self.instance = ModuleInstanceFactory().create(self.descriptor)

    def test_capabilities(self):
        """Test the module computes and interprets."""
        self.assertIsInstance(self.instance, Computer)
        self.assertIsInstance(self.instance, Interpreter)

    def test_levels(self):
        """Test raw scores map to anxiety levels."""
        self.assertEqual(self.instance.compute({'raw_score': 4})['anxiety_level'], 'low')
        self.assertEqual(self.instance.compute({'raw_score': '14'})['anxiety_level'], 'moderate')
        self.assertEqual(self.instance.compute({'raw_score': 25})['anxiety_level'], 'elevated')
        self.assertEqual(self.instance.compute({'raw_score': 35})['anxiety_level'], 'high')

    def test_out_of_range_score(self):
        """Test impossible scores are rejected."""
        with self.assertRaises(ValueError):
            self.instance.compute({'raw_score': 41})

    def test_interpret(self):
        """Test elevated levels are flagged for follow-up."""
        self.assertEqual(
            self.instance.interpret({'anxiety_level': 'elevated'}),
            {'level': 'elevated', 'needs_follow_up': True},
        )
        self.assertEqual(self.instance.interpret({}), {})
