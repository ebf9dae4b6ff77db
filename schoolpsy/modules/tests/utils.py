"""
Helpers shared by the module system tests.
"""

import json
import shutil
import tempfile
from pathlib import Path

import yaml
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import connections

from schoolpsy.children.models import Child
from schoolpsy.core.context import Actor
from schoolpsy.modules.conf import ModuleSystemConfig
from schoolpsy.modules.engine import ModuleEngine

User = get_user_model()

REPO_ROOT = Path(__file__).resolve().parents[3]
BUNDLED_MODULES = REPO_ROOT / 'test_modules'


def manifest_data(key, **overrides):
    """A valid manifest for ``key``"""
    data = {
        'module_key': key,
        'name': key.replace('_', ' ').title(),
        'description': f"Test module {key}",
        'version': '1.0.0',
        'author': 'Test Author',
        'category': 'emotional',
        'database': {
            'columns': {'score': 'integer', 'level': 'string'},
        },
    }
    data.update(overrides)
    return data


def write_module(root, key, data=None, fmt='json', files=None, directory=None):
    """
    Create a module directory under ``root``.

    Args:
        root: Module root
        key: Manifest key
        data: Manifest dict, raw bytes, or None for ``manifest_data(key)``
        fmt: 'json' or 'yaml'
        files: Extra files {name: text}
        directory: Directory name when it should differ from the key
    """
    module_dir = Path(root) / (directory or key)
    module_dir.mkdir(parents=True, exist_ok=True)

    if data is None:
        data = manifest_data(key)

    if isinstance(data, bytes):
        raw = data
    elif fmt == 'json':
        raw = json.dumps(data).encode('utf-8')
    else:
        raw = yaml.safe_dump(data).encode('utf-8')

    filename = 'module.json' if fmt == 'json' else 'module.yaml'
    (module_dir / filename).write_bytes(raw)

    for name, content in (files or {}).items():
        (module_dir / name).write_text(content, encoding='utf-8')

    return module_dir


def make_config(*paths, **overrides):
    values = {
        'module_paths': tuple(Path(p) for p in paths),
        'capabilities': frozenset({'json', 'sql', 'date'}),
        'runtime_version': '3.11.4',
    }
    values.update(overrides)
    return ModuleSystemConfig(**values)


def result_tables(using='default'):
    connection = connections[using]
    with connection.cursor() as cursor:
        names = connection.introspection.table_names(cursor)
    return [name for name in names if name.startswith('test_') and name.endswith('_results')]


def drop_result_tables(using='default'):
    connection = connections[using]
    with connection.cursor() as cursor:
        for name in result_tables(using):
            cursor.execute(f"DROP TABLE IF EXISTS {connection.ops.quote_name(name)}")


class ModuleTestMixin:
    """Temporary module root, engine factory and tenants for module tests"""

    def setUp(self):
        super().setUp()
        cache.clear()
        self.root = Path(tempfile.mkdtemp(prefix='schoolpsy-modules-'))
        self.addCleanup(shutil.rmtree, self.root, True)

    def tearDown(self):
        drop_result_tables()
        super().tearDown()

    def make_engine(self, *paths, constructors=None, ownership_check=None, **overrides):
        config = make_config(*(paths or (self.root,)), **overrides)
        engine = ModuleEngine(config, constructors=constructors, ownership_check=ownership_check)
        self.addCleanup(engine.shutdown)
        return engine

    def make_psychologist(self, username):
        user = User.objects.create_user(username=username, password='TestPass123!')
        return user, Actor(psychologist_id=user.pk, ip_address='127.0.0.1', user_agent='tests')

    def make_child(self, psychologist, pk=None, **kwargs):
        values = {'first_name': 'Test', 'last_name': 'Child', 'class_name': '5A'}
        values.update(kwargs)
        if pk is not None:
            values['pk'] = pk
        return Child.objects.create(psychologist=psychologist, **values)
