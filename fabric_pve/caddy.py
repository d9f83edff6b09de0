#!/usr/bin/python3
# coding: utf-8

'''Caddy HTTPS reverse proxy in front of the Proxmox web interface'''
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
import os.path
import sys
import time


try:
    from fabric import task
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
import invoke
from invoke.exceptions import Exit
import requests

from . import host
from .config import DEFAULT_ENV_FILE, Settings, load_settings, render_template


TEMPLATE = os.path.join(os.path.dirname(__file__), 'Caddyfile.in')
CLOUDSMITH_KEY_URL = 'https://dl.cloudsmith.io/public/caddy/stable/gpg.key'
CLOUDSMITH_SOURCES_URL = 'https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt'
KEYRING = '/usr/share/keyrings/caddy-stable-archive-keyring.gpg'
SOURCES_LIST = '/etc/apt/sources.list.d/caddy-stable.list'
LOG_DIR = '/var/log/caddy'
STAGING_CA = 'https://acme-staging-v02.api.letsencrypt.org/directory'

HTTPS_ATTEMPTS = 30
HTTPS_DELAY = 10


@task
def install(con, env_file=DEFAULT_ENV_FILE):
    '''install Caddy from the upstream repository, leaving it stopped'''
    settings = load_settings(env_file)
    host.check_root(con)
    if host.command_exists(con, 'caddy'):
        logging.info('caddy already installed: %s',
                     host.query(con, 'caddy version').stdout.strip())
    else:
        host.apt_install(con, ['debian-keyring', 'debian-archive-keyring',
                               'apt-transport-https', 'curl', 'gnupg'], update=True)
        if not host.path_exists(con, KEYRING):
            con.run("curl -1sLf '%s' | gpg --dearmor -o %s" % (CLOUDSMITH_KEY_URL, KEYRING))
        if not host.path_exists(con, SOURCES_LIST):
            con.run("curl -1sLf '%s' > %s" % (CLOUDSMITH_SOURCES_URL, SOURCES_LIST))
        host.apt_install(con, ['caddy'], update=True)
    config_dir = settings['CADDY_CONFIG_DIR']
    for directory in (config_dir, LOG_DIR):
        con.run('mkdir -p %s' % directory)
        con.run('chown -R caddy:caddy %s' % directory)
    # configured and started by the https task
    host.disable_service(con, 'caddy')


def render_caddyfile(settings, template=TEMPLATE):
    '''the Caddyfile for SETTINGS, which must have DOMAIN and EMAIL'''
    settings = Settings(settings)
    if not settings.get('ACME_EMAIL'):
        settings['ACME_EMAIL'] = settings.get('EMAIL')
    settings['ACME_CA_DIRECTIVE'] = ''
    if settings.get_bool('ENABLE_STAGING'):
        settings['ACME_CA_DIRECTIVE'] = 'acme_ca %s' % STAGING_CA
    with open(template) as fp:
        return render_template(fp.read(), settings)


def wait_for_https(url, attempts=HTTPS_ATTEMPTS, delay=HTTPS_DELAY, session=None,
                   sleep=time.sleep):
    '''poll URL until it answers over verified TLS

    Returns True on the first response, False when ATTEMPTS ran out.'''
    if session is None:
        session = requests.Session()
    for attempt in range(1, attempts + 1):
        try:
            response = session.get(url, timeout=10)
        except requests.RequestException as e:
            logging.info('attempt %d/%d: %s not ready: %s', attempt, attempts, url, e)
        else:
            logging.info('%s answered with HTTP %s', url, response.status_code)
            return True
        if attempt < attempts:
            sleep(delay)
    return False


@task(help={
    'env-file': 'settings file with DOMAIN and EMAIL (default: .env)',
    'attempts': 'how many times to poll the HTTPS endpoint (default: 30)',
    'delay': 'seconds between polls (default: 10)',
})
def https(con, env_file=DEFAULT_ENV_FILE, attempts=HTTPS_ATTEMPTS, delay=HTTPS_DELAY):
    '''configure Caddy to proxy the Proxmox interface over HTTPS'''
    settings = load_settings(env_file).require('DOMAIN', 'EMAIL', 'PROXMOX_PORT')
    host.check_root(con)
    host.check_dependencies(con, ['caddy', 'systemctl'])
    content = render_caddyfile(settings)
    path = os.path.join(settings['CADDY_CONFIG_DIR'], 'Caddyfile')
    backup = host._rewrite_file(con, path, content)
    con.run('chown caddy:caddy %s' % path, warn=True)
    if con.run('caddy fmt --overwrite %s' % path, warn=True, hide=True).failed:
        logging.warning('caddy fmt failed on %s, continuing', path)
    res = con.run('caddy validate --config %s' % path, warn=True, hide=True)
    if res.failed:
        if backup:
            host.restore_file(con, backup, path)
        raise Exit('invalid Caddy configuration: %s' % (res.stderr or res.stdout).strip())

    if host.command_exists(con, 'ufw'):
        for port in ('80/tcp', '443/tcp'):
            con.run('ufw allow %s' % port, warn=True, hide=True)
    if host.is_service_active(con, 'caddy'):
        host.reload_service(con, 'caddy')
    else:
        host.enable_service(con, 'caddy')
    if not con.config.run.dry and not host.is_service_active(con, 'caddy'):
        raise Exit('caddy failed to start, see `journalctl -u caddy`')
    if con.config.run.dry:
        return True

    url = 'https://%s' % settings['DOMAIN']
    logging.warning('waiting for %s, certificate issuance can take a few minutes', url)
    if not wait_for_https(url, attempts=int(attempts), delay=int(delay)):
        raise Exit('%s did not come up, check DNS and `journalctl -u caddy`' % url)
    logging.warning('Proxmox is available at %s', url)
    return True


@task(help={'env-file': 'settings file with DOMAIN and EMAIL (default: .env)'})
def setup(con, env_file=DEFAULT_ENV_FILE):
    '''install Caddy then put the Proxmox interface behind it'''
    install(con, env_file=env_file)
    return https(con, env_file=env_file)


def test_render_caddyfile():
    settings = {'DOMAIN': 'pve.example.com', 'EMAIL': 'admin@example.com',
                'PROXMOX_PORT': '8006', 'INTERNAL_IP': '127.0.0.1'}
    content = render_caddyfile(settings)
    assert 'email admin@example.com' in content
    assert 'pve.example.com {' in content
    assert 'reverse_proxy https://127.0.0.1:8006 {' in content
    assert 'acme_ca' not in content
    assert '$' not in content

    settings.update(ACME_EMAIL='acme@example.com', ENABLE_STAGING='true')
    content = render_caddyfile(settings)
    assert 'email acme@example.com' in content
    assert 'acme_ca %s' % STAGING_CA in content


class FakeSession(object):
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def get(self, url, timeout=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise requests.ConnectionError('connection refused')
        response = requests.Response()
        response.status_code = 200
        return response


def test_wait_for_https():
    naps = []
    session = FakeSession(failures=2)
    assert wait_for_https('https://pve.example.com', attempts=5, delay=10,
                          session=session, sleep=naps.append)
    assert session.calls == 3
    assert naps == [10, 10]

    naps = []
    session = FakeSession(failures=10)
    assert not wait_for_https('https://pve.example.com', attempts=3, delay=1,
                              session=session, sleep=naps.append)
    assert session.calls == 3
    assert naps == [1, 1], 'no sleep after the last attempt'


def test_https_requires_domain(tmp_path):
    import pytest

    env = tmp_path / 'test.env'
    env.write_text('EMAIL=admin@example.com\n')
    con = invoke.MockContext()
    with pytest.raises(Exit):
        https(con, env_file=str(env))
