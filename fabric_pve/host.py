#!/usr/bin/python3
# coding: utf-8

'''host helpers shared by all provisioning tasks'''
# Copyright (C) 2016 Antoine Beaupré <anarcat@debian.org>
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

from datetime import datetime
import io
import logging
import os.path
import re
import sys


try:
    from fabric import task, Connection
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
import invoke
from invoke.exceptions import Exit


# matches the `date +%Y%m%d_%H%M%S` stamps the operators are used to
BACKUP_TIMESTAMP = '%Y%m%d_%H%M%S'


def hostname(con):
    '''a printable name for the connection, "localhost" for a plain Context'''
    return getattr(con, 'host', None) or 'localhost'


def is_remote(con):
    return isinstance(con, Connection)


def query(con, command):
    '''run a read-only command, even in dry-run mode

    Dry runs still need to look at the host to print a sensible plan,
    so inspection commands are exempt from `--dry`.'''
    return con.run(command, hide=True, warn=True, dry=False)


def _open(con, path, mode='rb'):
    '''open a file on the target, over SFTP if remote'''
    if is_remote(con):
        return con.sftp().file(path, mode=mode)
    return open(path, mode)


@task
def check_root(con):
    '''abort unless commands run as root on the target'''
    res = query(con, 'id -u')
    if res.failed or res.stdout.strip() != '0':
        raise Exit('this must be run as root on %s' % hostname(con))
    return True


def command_exists(con, command):
    return query(con, 'command -v %s' % command).ok


@task(iterable=['command'])
def check_dependencies(con, command):
    '''abort if any of the given commands is missing on the target'''
    missing = [c for c in command if not command_exists(con, c)]
    if missing:
        raise Exit('missing required commands on %s: %s'
                   % (hostname(con), ', '.join(missing)))
    logging.debug('all dependencies found on %s: %s', hostname(con), ' '.join(command))
    return True


@task
def path_exists(con, path):
    '''check if path exists on the target'''
    logging.debug('checking for path "%s" on %s', path, hostname(con))
    return query(con, 'test -e %s' % path).ok


def read_file(con, path):
    '''return the content of PATH as text, or None if it cannot be read'''
    try:
        with _open(con, path, 'rb') as fp:
            content = fp.read()
    except (IOError, OSError) as e:
        logging.debug('cannot read %s on %s: %s', path, hostname(con), e)
        return None
    return content.decode('utf-8')


@task
def write_to_file(con, path, content, mode='wb'):
    _write_to_file(con, path, content, mode=mode)


def _write_to_file(con, path, content, mode='wb'):
    '''write (or append, depending on MODE) bytes to a file

    This does not check for duplicates.'''
    if isinstance(content, str):
        content = content.encode('utf-8')
    if con.config.run.dry:
        logging.info('would write %d bytes to %s on %s', len(content), path, hostname(con))
        return
    with _open(con, path, mode) as fp:
        fp.write(content)


@task
def ensure_line(con, path, line, match=None, ensure_newline=True):
    '''make sure LINE is present in PATH, appending it if missing'''
    if isinstance(line, str):
        line = line.encode('utf-8')
    if isinstance(match, str):
        match = match.encode('utf-8')
    if con.config.run.dry:
        logging.info('would ensure "%s" in %s on %s', line.decode('utf-8'), path, hostname(con))
        return
    with _open(con, path, 'ab+') as fp:
        ensure_line_stream(fp, line, match=match, ensure_newline=ensure_newline)


def ensure_line_stream(stream, line,
                       match=None,
                       ensure_newline=True,
                       flags=re.MULTILINE):
    '''ensure that line is present in the given stream, adding it if missing

    Will ensure the given line is present in the stream. If match is
    provided, it's treated as a regular expression for a pattern to
    look for, and the matching text is replaced by the line. If match
    is not provided, it defaults to the full line on its own line.

    If ensure_newline is specified (the default), it will also append a
    newline character even if missing from the line.

    This is inspired by Puppet's stdlib file_line resource:

    https://github.com/puppetlabs/puppetlabs-stdlib/'''
    if match is None:
        match = b'^' + re.escape(line) + b'$'
    rep = re.compile(match, flags=flags)
    stream.seek(0)
    content = stream.read()
    res = rep.search(content)
    if res:
        if res.group(0).strip() == line.strip():
            logging.debug('exact line present in stream %s, skipping: %s',
                          stream, line)
        else:
            logging.debug('match found in stream %s: %s; replacing with %s',
                          stream, res.group(0), line)
            content_new = rep.sub(line.replace(b'\\', b'\\\\'), content)
            stream.seek(0)
            stream.truncate(0)
            stream.write(content_new)
    else:
        logging.debug('line not found in stream %s, appending: %s',
                      stream, line)
        stream.seek(0, 2)  # EOF
        # do not glue our line to an unterminated last line
        if content and not content.endswith(b"\n"):
            stream.write(b"\n")
        stream.write(line)
        if ensure_newline and not line.endswith(b"\n"):
            stream.write(b"\n")
    return stream


def test_ensure_line_stream():
    stream = io.BytesIO()
    ensure_line_stream(stream, b"br_netfilter", ensure_newline=False)
    stream.seek(0)
    assert stream.read() == b"br_netfilter", 'appends if empty, without newline'

    stream = io.BytesIO(b"# /etc/modules\nloop\n")
    ensure_line_stream(stream, b"br_netfilter")
    stream.seek(0)
    assert stream.read() == b"# /etc/modules\nloop\nbr_netfilter\n", 'appends if missing'
    ensure_line_stream(stream, b"br_netfilter")
    stream.seek(0)
    assert stream.read() == b"# /etc/modules\nloop\nbr_netfilter\n", 'idempotent'

    stream = io.BytesIO(b"loop")
    ensure_line_stream(stream, b"raid1")
    stream.seek(0)
    assert stream.read() == b"loop\nraid1\n", 'does not glue to unterminated line'

    stream = io.BytesIO(b'GRUB_TIMEOUT=5\nGRUB_PRELOAD_MODULES="lvm"\n')
    ensure_line_stream(stream, b'GRUB_PRELOAD_MODULES="raid mdraid1x"',
                       match=rb'^GRUB_PRELOAD_MODULES=.*$')
    stream.seek(0)
    assert stream.read() == b'GRUB_TIMEOUT=5\nGRUB_PRELOAD_MODULES="raid mdraid1x"\n', 'replaces on match'  # noqa: E501

    stream = io.BytesIO(b"keyboard: en-us\nconsole: vv\n")
    ensure_line_stream(stream, b"console: html5", match=rb"^console:.*$")
    stream.seek(0)
    assert stream.read() == b"keyboard: en-us\nconsole: html5\n"


def backup_path_for(path, backup_dir=None, now=None):
    '''compute a timestamped backup path for PATH

    >>> backup_path_for('/etc/fstab', now=datetime(2024, 5, 1, 13, 37, 0))
    '/etc/fstab.backup.20240501_133700'
    >>> backup_path_for('/etc/network/interfaces', '/root/network-backups', datetime(2024, 5, 1))
    '/root/network-backups/interfaces.backup.20240501_000000'
    '''
    if now is None:
        now = datetime.now()
    name = '%s.backup.%s' % (os.path.basename(path), now.strftime(BACKUP_TIMESTAMP))
    if backup_dir is None:
        return os.path.join(os.path.dirname(path), name)
    return os.path.join(backup_dir, name)


@task
def backup_file(con, path, backup_dir=None):
    return _backup_file(con, path, backup_dir)


def _backup_file(con, path, backup_dir=None):
    '''copy PATH to a timestamped backup, returning the backup path

    Returns None if the file could not be copied, typically because
    it does not exist yet.'''
    backup_path = backup_path_for(path, backup_dir)
    logging.info('copying %s to %s on %s', path, backup_path, hostname(con))
    if backup_dir is not None:
        con.run('mkdir -p %s' % backup_dir, hide=True, warn=True)
    res = con.run('cp -p %s %s' % (path, backup_path), hide=True, warn=True)
    if res.failed:
        logging.warning('failed to backup file %s: %s', path, res.stderr.strip())
        return None
    return backup_path


@task
def diff_file(con, left_path, right_path):
    return _diff_file(con, left_path, right_path)


def _diff_file(con, left_path, right_path):
    if left_path is None:
        left_path = '/dev/null'
    return con.run('diff -u %s %s' % (left_path, right_path), warn=True)


@task
def rewrite_file(con, path, content):
    _rewrite_file(con, path, content)


def _rewrite_file(con, path, content, backup_dir=None):
    '''write a new file, keeping a backup

    This overwrites the given PATH with CONTENT, keeping a timestamped
    backup and showing a diff. Returns the backup path, which is None
    if there was nothing to backup.
    '''
    backup_path = _backup_file(con, path, backup_dir)
    logging.info('writing file %d bytes in %s on %s',
                 len(content), path, hostname(con))
    _write_to_file(con, path, content)
    if not con.config.run.dry:
        _diff_file(con, backup_path, path)
    return backup_path


def restore_file(con, backup_path, path):
    '''put a backup made by backup_file() back in place'''
    logging.warning('restoring %s from %s on %s', path, backup_path, hostname(con))
    return con.run('cp -p %s %s' % (backup_path, path), warn=True).ok


@task
def is_service_active(con, service):
    return query(con, 'systemctl is-active --quiet %s' % service).ok


@task
def enable_service(con, service):
    '''enable and start a systemd unit'''
    logging.info('enabling and starting %s on %s', service, hostname(con))
    res = con.run('systemctl enable %s' % service, hide=True, warn=True)
    if res.failed:
        logging.warning('failed to enable %s: %s', service, res.stderr.strip())
    return con.run('systemctl start %s' % service, warn=True).ok


@task
def disable_service(con, service):
    '''stop and disable a systemd unit'''
    con.run('systemctl stop %s' % service, hide=True, warn=True)
    return con.run('systemctl disable %s' % service, hide=True, warn=True).ok


@task
def restart_service(con, service):
    logging.info('restarting %s on %s', service, hostname(con))
    return con.run('systemctl restart %s' % service, warn=True).ok


@task
def reload_service(con, service):
    '''reload a service, restarting it if it does not support reloads'''
    if con.run('systemctl reload %s' % service, hide=True, warn=True).ok:
        logging.info('reloaded %s on %s', service, hostname(con))
        return True
    logging.warning('failed to reload %s, restarting instead', service)
    return restart_service(con, service)


@task(iterable=['package'])
def apt_install(con, package, update=False):
    '''install Debian packages non-interactively'''
    if update:
        con.run('apt-get update -qq', hide=True)
    logging.info('installing %s on %s', ' '.join(package), hostname(con))
    return con.run('DEBIAN_FRONTEND=noninteractive apt-get install -y -qq %s'
                   % ' '.join(package), hide=True)


def confirm(question, force=False, strict=False):
    '''ask the operator a yes/no question on the terminal

    FORCE answers yes without asking. STRICT requires the full word
    "yes", for operations that can wipe data or lock us out.'''
    if force:
        logging.info('%s: assuming yes (forced)', question)
        return True
    prompt = '%s (yes/no): ' if strict else '%s [y/N]: '
    try:
        answer = input(prompt % question).strip().lower()
    except EOFError:
        answer = ''
    if strict:
        return answer == 'yes'
    return answer in ('y', 'yes')


def test_confirm(monkeypatch):
    monkeypatch.setattr('builtins.input', lambda prompt: 'y')
    assert confirm('wipe /dev/sdb?')
    assert not confirm('wipe /dev/sdb?', strict=True), 'strict wants the full word'
    monkeypatch.setattr('builtins.input', lambda prompt: 'YES')
    assert confirm('wipe /dev/sdb?', strict=True)
    monkeypatch.setattr('builtins.input', lambda prompt: '')
    assert not confirm('wipe /dev/sdb?')
    assert confirm('wipe /dev/sdb?', force=True)


@task
def mount(con, device, path, options='', warn=None):
    '''mount a device'''
    command = 'mount %s %s %s' % (options, device, path)
    return con.run(command.replace('  ', ' ').strip(), warn=warn)


@task
def umount(con, path, warn=None):
    '''umount a device'''
    return con.run('umount %s' % path, warn=warn)


def test_backup_file():
    # the timestamp changes, so match the command with a regex
    con = invoke.MockContext(repeat=True, run={
        re.compile(r'^cp -p /etc/fstab /etc/fstab\.backup\.\d{8}_\d{6}$'): invoke.Result(),
    })
    backup = _backup_file(con, '/etc/fstab')
    assert backup.startswith('/etc/fstab.backup.')

    con = invoke.MockContext(repeat=True, run={
        re.compile(r'^cp -p .*'): invoke.Result(exited=1, stderr='No such file'),
    })
    assert _backup_file(con, '/etc/nope') is None


def test_write_and_read_local(tmp_path):
    con = invoke.Context()
    path = str(tmp_path / 'modules')
    _write_to_file(con, path, 'loop\n')
    assert read_file(con, path) == 'loop\n'
    ensure_line(con, path, 'br_netfilter')
    ensure_line(con, path, 'br_netfilter')
    assert read_file(con, path) == 'loop\nbr_netfilter\n'
    assert read_file(con, str(tmp_path / 'missing')) is None
