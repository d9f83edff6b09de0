#!/usr/bin/python3
# coding: utf-8

'''settings loading for the provisioning tasks'''
# Copyright (C) 2026 fabric-pve contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import logging
import os
import os.path
from string import Template

from dotenv import dotenv_values
from invoke.exceptions import Exit


DEFAULT_ENV_FILE = '.env'

DEFAULTS = {
    'LOG_LEVEL': 'INFO',
    'CADDY_CONFIG_DIR': '/etc/caddy',
    'PROXMOX_PORT': '8006',
    'INTERNAL_IP': '127.0.0.1',
    'ENABLE_STAGING': 'false',
    'PFSENSE_VM_ID': '100',
    'PFSENSE_MEMORY': '2048',
    'PFSENSE_CPU_CORES': '2',
    'PFSENSE_DISK_SIZE': '8',
    'FIREWALL_ADMIN_VM_ID': '200',
    'FIREWALL_ADMIN_MEMORY': '1024',
    'FIREWALL_ADMIN_CORES': '1',
    'FIREWALL_ADMIN_DISK_SIZE': '8',
}

# read from the process environment even when neither the defaults nor
# the settings file mention them
ENV_KEYS = ('DOMAIN', 'EMAIL', 'ACME_EMAIL', 'FIREWALL_ADMIN_HOSTNAME')
ENV_PREFIXES = ('ADDITIONAL_',)

TRUE_STRINGS = ('1', 'true', 'yes', 'y', 'on')


class Settings(dict):
    """a read-mostly mapping of configuration variables

    This replaces the pile of exported shell variables with one object
    that gets passed around explicitly. Values are always strings, as
    they would be in a `.env` file; use the typed getters to convert.
    """

    def get_int(self, key, default=None):
        value = self.get(key)
        if value in (None, ''):
            return default
        try:
            return int(value)
        except ValueError:
            raise Exit('setting %s must be an integer, got %r' % (key, value))

    def get_bool(self, key, default=False):
        value = self.get(key)
        if value in (None, ''):
            return default
        return value.strip().lower() in TRUE_STRINGS

    def require(self, *keys):
        """abort if any of the given settings is missing or empty"""
        missing = [k for k in keys if not self.get(k)]
        if missing:
            raise Exit('missing required settings: %s' % ', '.join(missing))
        return self


def load_settings(path=DEFAULT_ENV_FILE, environ=None):
    """load settings from a dotenv file, with defaults and overrides

    Precedence, from lowest to highest: DEFAULTS, the file at PATH,
    then the ENVIRON mapping (which defaults to `os.environ`, pass an
    empty dict to ignore the process environment). A missing file is
    not an error, it just yields the defaults.
    """
    settings = Settings(DEFAULTS)
    if path and os.path.exists(path):
        logging.debug('loading settings from %s', path)
        settings.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    elif path:
        logging.debug('no settings file found at %s, using defaults', path)
    if environ is None:
        environ = os.environ
    keys = set(settings).union(ENV_KEYS)
    keys.update(k for k in environ if k.startswith(ENV_PREFIXES))
    for key in keys:
        if key in environ:
            settings[key] = environ[key]
    return settings


def render_template(text, settings):
    """substitute $VAR and ${VAR} references from SETTINGS

    Like envsubst, references to unknown variables are left alone.

    >>> render_template('${DOMAIN}:$PORT $NOPE', {'DOMAIN': 'pve.example.com', 'PORT': '443'})
    'pve.example.com:443 $NOPE'
    """
    return Template(text).safe_substitute(settings)


def test_load_settings(tmp_path):
    env = tmp_path / 'test.env'
    env.write_text('''# comment
DOMAIN=pve.example.com
EMAIL="admin@example.com"
PROXMOX_PORT=8443
ADDITIONAL_IP_1=203.0.113.10
''')
    settings = load_settings(str(env), environ={'PROXMOX_PORT': '9000'})
    assert settings['DOMAIN'] == 'pve.example.com'
    assert settings['EMAIL'] == 'admin@example.com'
    assert settings.get_int('PROXMOX_PORT') == 9000, 'environment overrides file'
    assert settings['ADDITIONAL_IP_1'] == '203.0.113.10'
    assert settings['CADDY_CONFIG_DIR'] == '/etc/caddy', 'defaults kept'


def test_load_settings_missing_file(tmp_path):
    settings = load_settings(str(tmp_path / 'nope.env'), environ={})
    assert settings == DEFAULTS


def test_load_settings_environment_only(tmp_path):
    settings = load_settings(str(tmp_path / 'nope.env'), environ={
        'DOMAIN': 'pve.example.com',
        'EMAIL': 'admin@example.com',
        'ADDITIONAL_IP_1': '203.0.113.10',
        'HOME': '/root',
    })
    settings.require('DOMAIN', 'EMAIL')
    assert settings['DOMAIN'] == 'pve.example.com'
    assert settings['ADDITIONAL_IP_1'] == '203.0.113.10'
    assert 'HOME' not in settings, 'unrelated variables are not picked up'


def test_settings_require():
    import pytest

    settings = Settings(DOMAIN='pve.example.com', EMAIL='')
    assert settings.require('DOMAIN') is settings
    with pytest.raises(Exit):
        settings.require('DOMAIN', 'EMAIL')


def test_settings_getters():
    settings = Settings(ENABLE_STAGING='True', PFSENSE_MEMORY='4096', EMPTY='')
    assert settings.get_bool('ENABLE_STAGING')
    assert not settings.get_bool('MISSING')
    assert settings.get_int('PFSENSE_MEMORY') == 4096
    assert settings.get_int('EMPTY', 12) == 12
