"""
Unit tests for RentalLedger.settings.lib
(covers the validators, ConfigPaths and SettingsAPI).

Run with:
    python -m unittest tests.test_settings
"""

from __future__ import annotations

import json
import unittest
from pathlib import Path
from typing import Any, Dict

from RentalLedger.settings import lib
from RentalLedger.settings.lib import CONFIG_SCHEMA, SettingsAPI, _validate_items
from RentalLedger.signals import signals
from RentalLedger.status import status
from tests.base import BaseTestCase, CLIENT_CONFIG, mute_ui_signals


def minimal_config() -> Dict[str, Any]:
    return {
        'client': json.loads(json.dumps(CLIENT_CONFIG)),
        'spreadsheet': {'id': 'sheet-123'},
        'sync': {'max_retries': 3, 'backoff_seconds': 0.5, 'http_timeout': 30},
    }


def write_json(p: Path, data: Dict[str, Any]) -> None:
    with p.open('w', encoding='utf-8') as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


class ValidatorTests(unittest.TestCase):

    def test_client_config_sections(self):
        self.assertEqual(SettingsAPI.validate_client_config(CLIENT_CONFIG), 'web')
        installed = {'installed': CLIENT_CONFIG['web']}
        self.assertEqual(SettingsAPI.validate_client_config(installed), 'installed')

    def test_client_config_missing_section(self):
        with self.assertRaises(ValueError):
            SettingsAPI.validate_client_config({'other': {}})
        with self.assertRaises(TypeError):
            SettingsAPI.validate_client_config(None)  # type: ignore

    def test_client_config_missing_fields(self):
        with self.assertRaises(ValueError) as cm:
            SettingsAPI.validate_client_config({'web': {'client_id': 'x'}})
        self.assertIn('client_secret', str(cm.exception))

    def test_sync_items(self):
        schema = CONFIG_SCHEMA['sync']['item_schema']
        _validate_items('sync', {'max_retries': 0, 'backoff_seconds': 2, 'http_timeout': 10}, schema)
        for bad, exc in (
                ({'backoff_seconds': 1.0, 'http_timeout': 10}, ValueError),
                ({'max_retries': -1, 'backoff_seconds': 1.0, 'http_timeout': 10}, ValueError),
                ({'max_retries': '5', 'backoff_seconds': 1.0, 'http_timeout': 10}, TypeError),
                ({'max_retries': True, 'backoff_seconds': 1.0, 'http_timeout': 10}, TypeError),
        ):
            with self.subTest(section=bad):
                with self.assertRaises(exc):
                    _validate_items('sync', bad, schema)


class ConfigPathsTests(BaseTestCase):

    def test_template_is_copied(self):
        cp = lib.ConfigPaths()
        self.assertTrue(cp.config_template.exists())
        self.assertEqual(
            json.loads(cp.config_path.read_text(encoding='utf-8')),
            json.loads(cp.config_template.read_text(encoding='utf-8')),
        )
        self.assertEqual(cp.db_path.parent, cp.db_dir)

    def test_revert_config_to_template(self):
        cp = lib.ConfigPaths()
        cp.config_path.write_text('{}', encoding='utf-8')
        cp.revert_config_to_template()
        self.assertIn('sync', json.loads(cp.config_path.read_text(encoding='utf-8')))


class SettingsAPITests(BaseTestCase):

    def test_template_defaults(self):
        self.assertEqual(lib.settings.get_section('sync'), {'max_retries': 5, 'backoff_seconds': 1.0, 'http_timeout': 60})
        with self.assertRaises(status.SpreadsheetIdNotConfiguredException):
            lib.settings.spreadsheet_id

    def test_load_custom_config(self):
        path = self.config_paths.config_dir / 'custom.json'
        write_json(path, minimal_config())
        api = SettingsAPI(config_path=str(path))
        self.assertEqual(api.spreadsheet_id, 'sheet-123')
        self.assertEqual(api.client_config, CLIENT_CONFIG)

    def test_missing_config(self):
        with self.assertRaises(status.ConfigNotFoundException):
            SettingsAPI(config_path=str(self.config_paths.config_dir / 'missing.json'))

    def test_invalid_config(self):
        path = self.config_paths.config_dir / 'broken.json'
        for content in ('not json', json.dumps({'client': CLIENT_CONFIG})):
            with self.subTest(content=content):
                path.write_text(content, encoding='utf-8')
                with self.assertRaises(status.ConfigInvalidException):
                    SettingsAPI(config_path=str(path))

    def test_get_section_returns_copy(self):
        section = lib.settings.get_section('client')
        section['web']['client_id'] = 'changed'
        self.assertEqual(lib.settings.get_section('client')['web']['client_id'], '')

    def test_set_section_persists_and_emits(self):
        changed = []
        signals.configSectionChanged.connect(changed.append)
        try:
            lib.settings.set_section('spreadsheet', {'id': 'sheet-456'})
        finally:
            signals.configSectionChanged.disconnect(changed.append)

        self.assertEqual(changed, ['spreadsheet'])
        self.assertEqual(lib.settings.spreadsheet_id, 'sheet-456')
        on_disk = json.loads(lib.settings.config_path.read_text(encoding='utf-8'))
        self.assertEqual(on_disk['spreadsheet'], {'id': 'sheet-456'})
        self.assertEqual(on_disk['sync'], lib.settings.get_section('sync'))

    def test_set_section_rolls_back_invalid_data(self):
        with mute_ui_signals():
            with self.assertRaises(TypeError):
                lib.settings.set_section('sync', {'max_retries': 'many', 'backoff_seconds': 1.0, 'http_timeout': 60})
            with self.assertRaises(ValueError):
                lib.settings.set_section('unknown', {})
        self.assertEqual(lib.settings.get_section('sync')['max_retries'], 5)

    def test_revert_section(self):
        with mute_ui_signals():
            lib.settings.set_section('client', CLIENT_CONFIG)
            lib.settings.revert_section('client')
        self.assertEqual(lib.settings.client_config['web']['client_id'], '')
        with self.assertRaises(ValueError):
            lib.settings.revert_section('unknown')

    def test_save_section_unknown(self):
        with self.assertRaises(ValueError):
            lib.settings.save_section('unknown')
