"""Settings library for the OAuth client, spreadsheet and sync configuration.

Provides:
    - Schema validation for the config.json structure.
    - Loading, saving, reverting and managing application settings.
    - Paths of the per-user data directory, the packaged template and the local cache.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'RentalLedger'

CLIENT_SECTION_KEYS: List[str] = ['installed', 'web']
REQUIRED_CLIENT_KEYS: List[str] = ['client_id', 'client_secret', 'auth_uri', 'token_uri']

CONFIG_SCHEMA: Dict[str, Any] = {
    'client': {
        'type': dict,
        'required': True,
    },
    'spreadsheet': {
        'type': dict,
        'required': True,
        'item_schema': {
            'id': {'type': str, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'max_retries': {'type': int, 'required': True},
            'backoff_seconds': {'type': (int, float), 'required': True},
            'http_timeout': {'type': int, 'required': True},
        }
    },
}


def _validate_items(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the fields of a flat configuration section.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Mapping of field names to their 'type' and 'required' specs.

    Raises:
        ValueError: If a required field is missing or a numeric field is negative.
        TypeError: If a field is of the wrong type.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field not in section:
            if field_specs['required']:
                msg = f'"{section_name}" is missing "{field}".'
                logging.error(msg)
                raise ValueError(msg)
            continue

        value = section[field]
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, field_specs['type']):
            msg = f'"{section_name}.{field}" must be {field_specs["type"]}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)
        if isinstance(value, (int, float)) and value < 0:
            msg = f'"{section_name}.{field}" must not be negative, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default configuration exists.

    Resolves the per-user data directory through Qt's standard paths, verifies
    the packaged template and copies it into place on first use.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.config_template: pathlib.Path = self.template_dir / 'config.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.config_path: pathlib.Path = self.config_dir / 'config.json'
        self.db_path: pathlib.Path = self.db_dir / 'cache.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare the configuration directories.

        Raises:
            FileNotFoundError: If the template directory or file is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.template_dir.exists():
            msg: str = f'Missing template directory: {self.template_dir}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        if not self.config_template.exists():
            msg = f'Missing config template: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        if not self.config_dir.exists():
            logging.debug(f'Creating config directory: {self.config_dir}')
            self.config_dir.mkdir(parents=True, exist_ok=True)

        if not self.db_dir.exists():
            logging.debug(f'Creating db directory: {self.db_dir}')
            self.db_dir.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Copying default config from template to {self.config_path}')
            shutil.copy(self.config_template, self.config_path)

    def revert_config_to_template(self) -> None:
        """Restore config.json from the default template file.

        Raises:
            FileNotFoundError: If the template file is missing.
        """
        logging.debug(f'Reverting config to template: {self.config_template}')
        if not self.config_template.exists():
            msg: str = f'Config template not found: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.config_template, self.config_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save the sections of config.json.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the configuration.

        Args:
            config_path: Optional path to a custom config.json file.
        """
        super().__init__()

        self.config_path: pathlib.Path = pathlib.Path(config_path) if config_path else self.config_path

        self.config_data: Dict[str, Any] = {}
        for k in CONFIG_SCHEMA.keys():
            self.config_data[k] = {}

        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load config.json from disk and validate against schema.

        Returns:
            The loaded configuration dictionary.

        Raises:
            status.ConfigNotFoundException: If config.json is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.ConfigNotFoundException(str(self.config_path))

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_config_data(data)
        except (ValueError, TypeError) as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

        self.config_data = data
        return self.config_data

    @staticmethod
    def validate_client_config(data: Dict[str, Any]) -> str:
        """Validate that the client configuration has the OAuth client fields.

        The configuration follows Google's client_secrets.json layout.

        Args:
            data: Client configuration to validate.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            ValueError: If no client section exists or required fields are missing.
        """
        if not isinstance(data, dict):
            raise TypeError(f'client must be a dict, got {type(data)}.')

        key = next((k for k in CLIENT_SECTION_KEYS if k in data), None)
        if not key:
            raise ValueError('Missing "installed" or "web" section in the client configuration.')

        missing: List[str] = [k for k in REQUIRED_CLIENT_KEYS if k not in data[key]]
        if missing:
            raise ValueError(f'Missing required fields in the \'{key}\' section: {missing}.')
        return key

    def validate_config_data(self, data: Dict[str, Any] = None) -> None:
        """Validate configuration data against CONFIG_SCHEMA.

        Args:
            data (dict, optional): Data to validate. Defaults to self.config_data.

        Raises:
            ValueError: If a required section is missing or a value is out of range.
            TypeError: If a section or field is of the wrong type.
        """
        if data is None:
            data = self.config_data

        logging.debug('Validating config data against schema.')
        for field, specs in CONFIG_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise ValueError(f'Missing required section: {field}')
            if not isinstance(data[field], specs['type']):
                raise TypeError(f'Section "{field}" must be {specs["type"]}, got {type(data[field])}.')

            if field == 'client':
                self.validate_client_config(data[field])
            else:
                _validate_items(field, data[field], specs['item_schema'])

        logging.debug('Config data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a configuration section.

        Raises:
            KeyError: If section_name is not a known section.
        """
        return json.loads(json.dumps(self.config_data[section_name]))

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a configuration section.

        The previous value is restored if validation fails.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unrecognized or the data is invalid.
            TypeError: If the data has the wrong types.
        """
        from ..signals import signals

        if section_name not in CONFIG_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data = self.config_data.get(section_name)
        self.config_data[section_name] = new_data
        try:
            self.validate_config_data()
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.config_data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Raises:
            ValueError: If section_name is not a known section.
        """
        from ..signals import signals

        if section_name not in CONFIG_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.config_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.config_data[section_name] = template_data[section_name]
        self.save_section(section_name)

        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section, keeping the rest of the file as is.

        Raises:
            ValueError: If section_name is not a known section.
        """
        if section_name not in CONFIG_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        logging.debug(f'Saving section "{section_name}" to "{self.config_path}"')
        with self.config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.config_data[section_name]

        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)

    @property
    def client_config(self) -> Dict[str, Any]:
        """The OAuth client configuration in client_secrets.json layout."""
        return self.get_section('client')

    @property
    def spreadsheet_id(self) -> str:
        """The configured spreadsheet id.

        Raises:
            status.SpreadsheetIdNotConfiguredException: If no id is set.
        """
        spreadsheet_id = self.config_data['spreadsheet'].get('id', '')
        if not spreadsheet_id:
            raise status.SpreadsheetIdNotConfiguredException
        return spreadsheet_id


settings: SettingsAPI = SettingsAPI()
