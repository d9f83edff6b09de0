#!/usr/bin/python3
# coding: utf-8

'''base Proxmox host preparation'''
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
import re
import shlex
import sys
import time


try:
    from fabric import task
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
from humanize import naturalsize
import invoke
from invoke.exceptions import Exit, Failure

from . import host


DATACENTER_CFG = '/etc/pve/datacenter.cfg'
ENTERPRISE_LIST = '/etc/apt/sources.list.d/pve-enterprise.list'
NO_SUBSCRIPTION_LIST = '/etc/apt/sources.list.d/pve-no-subscription.list'
NO_SUBSCRIPTION_REPO = 'deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription'
WEB_PORT = 8006

EXTRA_PACKAGES = ['curl', 'wget', 'unzip', 'htop', 'iotop', 'ufw']

TUNING = {
    '/etc/sysctl.d/99-proxmox-swappiness.conf': '''\
vm.swappiness = 10
''',
    '/etc/sysctl.d/99-proxmox-io.conf': '''\
# flush dirty pages early, VM disks do not like write storms
vm.dirty_background_ratio = 5
vm.dirty_ratio = 10
vm.dirty_expire_centisecs = 3000
vm.dirty_writeback_centisecs = 500
''',
    '/etc/sysctl.d/99-proxmox-network.conf': '''\
net.core.rmem_default = 262144
net.core.rmem_max = 16777216
net.core.wmem_default = 262144
net.core.wmem_max = 16777216
net.ipv4.tcp_rmem = 4096 87380 16777216
net.ipv4.tcp_wmem = 4096 65536 16777216
net.core.netdev_max_backlog = 5000
net.ipv4.tcp_congestion_control = bbr
''',
    '/etc/sysctl.d/99-proxmox-virt.conf': '''\
# not available on all kernels
kernel.sched_autogroup_enabled = 0
kernel.numa_balancing = 0
''',
}


def parse_sysctl(text):
    """(parameter, value) pairs from a sysctl.d file

    >>> parse_sysctl('# comment\\nvm.swappiness = 10\\n\\nnet.ipv4.tcp_rmem = 4096 87380 16777216\\n')
    [('vm.swappiness', '10'), ('net.ipv4.tcp_rmem', '4096 87380 16777216')]
    """
    settings = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(('#', ';')):
            continue
        m = re.match(r'^([^=\s]+)\s*=\s*(.+)$', line)
        if m:
            settings.append((m.group(1), m.group(2).strip()))
    return settings


def apply_sysctl(con, path, content):
    '''apply settings one by one, returning the ones that failed

    Missing parameters are skipped instead of failing the whole file
    like `sysctl -p` would.'''
    failed = []
    for param, value in parse_sysctl(content):
        if host.query(con, 'test -f /proc/sys/%s' % param.replace('.', '/')).failed:
            logging.debug('skipping unavailable parameter %s', param)
            failed.append('%s (not available)' % param)
            continue
        if con.run('sysctl -w %s' % shlex.quote('%s=%s' % (param, value)),
                   warn=True, hide=True).failed:
            failed.append(param)
    if failed:
        logging.warning('some settings from %s could not be applied: %s', path, ', '.join(failed))
    return failed


@task
def check_host(con):
    '''make sure we are on a Debian-based Proxmox VE host'''
    host.check_root(con)
    if not host.command_exists(con, 'pvesh'):
        raise Exit('%s does not look like a Proxmox VE host, pvesh not found'
                   % host.hostname(con))
    release = host.read_file(con, '/etc/os-release') or ''
    if not re.search(r'^ID=debian$', release, re.MULTILINE):
        logging.warning('%s is not Debian, continuing anyway', host.hostname(con))
    version = host.query(con, 'pveversion').stdout.strip()
    logging.info('found %s', version)
    return version


@task
def configure_repositories(con):
    '''switch from the enterprise repository to no-subscription'''
    if host.path_exists(con, ENTERPRISE_LIST):
        logging.info('disabling the enterprise repository')
        con.run("sed -i 's/^deb/#deb/' %s" % ENTERPRISE_LIST)
    found = host.query(con, "grep -rh 'pve.*bookworm.*pve-no-subscription' "
                            "/etc/apt/sources.list /etc/apt/sources.list.d/")
    if any(not line.lstrip().startswith('#') for line in found.stdout.splitlines()):
        logging.info('no-subscription repository already configured')
        return False
    host.ensure_line(con, NO_SUBSCRIPTION_LIST, NO_SUBSCRIPTION_REPO)
    return True


@task
def update_system(con):
    '''upgrade packages and install the admin tools'''
    con.run('apt-get update -qq', hide=True)
    con.run('DEBIAN_FRONTEND=noninteractive apt-get upgrade -y -qq', hide=True)
    host.apt_install(con, EXTRA_PACKAGES)


@task
def configure_firewall(con, force=False):
    '''reset ufw to deny incoming, except SSH and HTTP(S)'''
    host.check_dependencies(con, ['ufw'])
    if not host.confirm('reset the ufw firewall on %s?' % host.hostname(con), force=force):
        logging.warning('firewall configuration skipped')
        return False
    for command in ('ufw --force reset',
                    'ufw default deny incoming',
                    'ufw default allow outgoing',
                    'ufw allow ssh',
                    'ufw allow 80/tcp',
                    'ufw allow 443/tcp',
                    'ufw --force enable'):
        con.run(command, hide=True)
    # the web interface stays reachable through the reverse proxy only
    logging.info('firewall enabled, port %d is closed from outside', WEB_PORT)
    return True


@task
def configure_web_interface(con):
    '''use the HTML5 console and check the web interface listens'''
    host.ensure_line(con, DATACENTER_CFG, 'console: html5', match=r'^console:.*$')
    for service in ('pveproxy', 'pvedaemon'):
        if not host.restart_service(con, service):
            logging.warning('failed to restart %s', service)
    listening = host.query(con, 'ss -tuln').stdout
    if ':%d ' % WEB_PORT not in listening:
        logging.warning('nothing listens on port %d yet', WEB_PORT)
        return False
    logging.info('Proxmox web interface listening on port %d', WEB_PORT)
    return True


@task
def tune_system(con):
    '''write and apply the sysctl tuning drop-ins'''
    failed = []
    for path, content in TUNING.items():
        host._write_to_file(con, path, content)
        failed += apply_sysctl(con, path, content)
    return failed


# container storage carved out of the free space of the system disk

DATA_MOUNT = '/data'
DATA_DIRECTORIES = ('containers', 'backups', 'templates', 'logs')
FSTAB = '/etc/fstab'
GIB = 1024 ** 3
MIN_DATA_SPACE = 10 * GIB
# left unpartitioned at the end of the disk
PARTITION_SLACK = GIB

LVM_ROOT_RE = re.compile(r'^/dev/(?:mapper/)?(?P<vg>[^/]+?)-root$')


def partition_parent(device):
    """the disk name of a partition device, from its name alone

    >>> partition_parent('/dev/sda3')
    'sda'
    >>> partition_parent('/dev/nvme0n1p2')
    'nvme0n1'
    """
    name = os.path.basename(device)
    m = re.match(r'^(.*\d)p\d+$', name)
    if m:
        return m.group(1)
    return re.sub(r'\d+$', '', name)


def parent_disk(con, device):
    lines = host.query(con, 'lsblk -no PKNAME %s' % device).stdout.split()
    if lines:
        return lines[0]
    return partition_parent(device)


@task
def system_disk(con):
    '''name of the disk holding the root filesystem, through LVM if needed'''
    root = host.query(con, 'findmnt -n -o SOURCE /').stdout.strip()
    if not root:
        raise Exit('cannot find the root filesystem device on %s' % host.hostname(con))
    m = LVM_ROOT_RE.match(root)
    if m and host.command_exists(con, 'pvs'):
        pvs = host.query(con, 'pvs --noheadings -o pv_name -S vg_name=%s'
                         % m.group('vg')).stdout.split()
        if pvs:
            return parent_disk(con, pvs[0])
    return parent_disk(con, root)


def parse_pvs(output):
    """map physical volumes to their volume group

    >>> parse_pvs('  /dev/sda3   pve\\n  /dev/sdb1\\n')
    {'/dev/sda3': 'pve', '/dev/sdb1': None}
    """
    pvs = {}
    for line in output.splitlines():
        fields = line.split()
        if fields:
            pvs[fields[0]] = fields[1] if len(fields) > 1 else None
    return pvs


def volume_group(con, disk):
    '''the LVM volume group living on DISK, or None'''
    if not host.command_exists(con, 'pvs'):
        return None
    pvs = parse_pvs(host.query(con, 'pvs --noheadings -o pv_name,vg_name').stdout)
    for device in host.query(con, 'lsblk -nlpo NAME /dev/%s' % disk).stdout.split():
        if pvs.get(device):
            return pvs[device]
    return None


def parse_disk_usage(output):
    """(disk size, space used by partitions) from `lsblk -bnlo SIZE,TYPE`

    >>> parse_disk_usage('500107862016 disk\\n536870912 part\\n400000000000 part\\n')
    (500107862016, 400536870912)
    """
    total = used = 0
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or not fields[0].isdigit():
            continue
        if fields[1] == 'disk' and not total:
            total = int(fields[0])
        elif fields[1] == 'part':
            used += int(fields[0])
    return total, used


def free_space(con, disk, vg=None):
    '''bytes available for /data, 0 when below MIN_DATA_SPACE'''
    if vg:
        output = host.query(con, 'vgs --noheadings --nosuffix --units b -o vg_free %s' % vg)
        value = output.stdout.strip().split('.')[0]
        free = int(value) if value.isdigit() else 0
    else:
        total, used = parse_disk_usage(host.query(con, 'lsblk -bnlo SIZE,TYPE /dev/%s' % disk).stdout)
        free = total - used - PARTITION_SLACK
    return free if free >= MIN_DATA_SPACE else 0


def ensure_data_directories(con):
    con.run('mkdir -p %s' % ' '.join(os.path.join(DATA_MOUNT, d) for d in DATA_DIRECTORIES))
    con.run('chown root:root %s' % DATA_MOUNT, warn=True)
    con.run('chmod 755 %s' % DATA_MOUNT, warn=True)


def stash_data(con):
    '''move the current content of /data aside before mounting over it

    Returns the temporary directory holding it, or None if /data was
    empty.'''
    if not host.query(con, 'ls -A %s' % DATA_MOUNT).stdout.strip():
        con.run('mkdir -p %s' % DATA_MOUNT)
        return None
    stash = con.run('mktemp -d /tmp/data-backup-XXXXXX', hide=True).stdout.strip()
    logging.info('saving the content of %s in %s', DATA_MOUNT, stash)
    con.run('cp -a %s/. %s/' % (DATA_MOUNT, stash))
    con.run('find %s -mindepth 1 -delete' % DATA_MOUNT)
    return stash


def unstash_data(con, stash):
    if stash is None:
        return
    if con.run('cp -a %s/. %s/' % (stash, DATA_MOUNT), warn=True).failed:
        logging.warning('failed to restore the content of %s, it is still in %s',
                        DATA_MOUNT, stash)
        return
    con.run('rm -rf %s' % stash, warn=True)


def mount_data(con, device):
    '''add DEVICE to fstab as /data, replacing any previous entry, and mount it'''
    uuid = host.query(con, 'blkid -s UUID -o value %s' % device).stdout.strip()
    if not uuid:
        logging.warning('no UUID found for %s, using the device path in fstab', device)
    source = 'UUID=%s' % uuid if uuid else device
    host.ensure_line(con, FSTAB, '%s %s ext4 defaults,noatime 0 2' % (source, DATA_MOUNT),
                     match=r'^\S+\s+%s\s.*$' % re.escape(DATA_MOUNT))
    con.run('mount %s' % DATA_MOUNT)


def create_lvm_data(con, vg, force=False):
    '''create, or extend, the data logical volume in VG'''
    lv = '%s/data' % vg
    device = '/dev/%s' % lv
    if host.query(con, 'lvs %s' % lv).ok:
        logging.info('logical volume %s already exists', lv)
        if host.confirm('extend %s to use all the free space?' % lv, force=force):
            con.run('lvextend -l +100%%FREE %s' % lv)
            if con.run('resize2fs %s' % device, warn=True).failed:
                logging.warning('extended %s but the filesystem resize failed, run resize2fs %s',
                                lv, device)
        return device
    stash = stash_data(con)
    try:
        con.run('lvcreate -y -l 100%%FREE -n data %s' % vg)
        try:
            con.run('mkfs.ext4 -F -q -L data %s' % device)
        except Failure:
            con.run('lvremove -y %s' % lv, warn=True)
            raise
        mount_data(con, device)
    finally:
        unstash_data(con, stash)
    return device


def create_partition_data(con, disk, free):
    '''create a data partition in the FREE bytes at the end of DISK'''
    types = host.query(con, 'lsblk -nlo TYPE /dev/%s' % disk).stdout.split()
    separator = 'p' if disk[-1].isdigit() else ''
    device = '/dev/%s%s%d' % (disk, separator, types.count('part') + 1)
    stash = stash_data(con)
    try:
        con.run('parted /dev/%s --script mkpart primary ext4 -- -%dB -1' % (disk, free))
        con.run('partprobe /dev/%s' % disk, warn=True)
        for _ in range(10):
            if con.config.run.dry or host.path_exists(con, device):
                break
            time.sleep(1)
        else:
            raise Exit('partition %s did not show up' % device)
        con.run('mkfs.ext4 -F -q -L data %s' % device)
        mount_data(con, device)
    finally:
        unstash_data(con, stash)
    return device


@task(help={
    'force': 'do not ask before creating or extending the volume',
    'dry-run': 'only report the free space found',
})
def data_partition(con, force=False, dry_run=False):
    '''create a /data volume for containers out of free space on the system disk

    On LVM installs this is a `data` logical volume in the root volume
    group, otherwise a new partition at the end of the system disk.'''
    host.check_root(con)
    if host.query(con, 'findmnt %s' % DATA_MOUNT).ok:
        logging.info('%s is already mounted', DATA_MOUNT)
        if not dry_run:
            ensure_data_directories(con)
        return None
    disk = system_disk(con)
    vg = volume_group(con, disk)
    free = free_space(con, disk, vg)
    where = 'volume group %s' % vg if vg else '/dev/%s' % disk
    if not free:
        logging.warning('less than %s free in %s, %s stays on the root filesystem',
                        naturalsize(MIN_DATA_SPACE, binary=True), where, DATA_MOUNT)
        if not dry_run:
            ensure_data_directories(con)
        return None
    logging.warning('%s free in %s can become %s', naturalsize(free, binary=True), where, DATA_MOUNT)
    if dry_run:
        return None
    if not host.confirm('create %s in %s?' % (DATA_MOUNT, where), force=force):
        logging.info('skipping %s creation', DATA_MOUNT)
        ensure_data_directories(con)
        return None
    if vg:
        device = create_lvm_data(con, vg, force=force)
    else:
        device = create_partition_data(con, disk, free)
    ensure_data_directories(con)
    logging.info('%s ready on %s', DATA_MOUNT, device)
    return device


@task(help={
    'force': 'do not ask before resetting the firewall or creating /data',
    'data': 'create the /data container volume (default: yes)',
})
def setup(con, force=False, data=True):
    '''prepare a fresh Proxmox install: repositories, packages, firewall, tuning, /data'''
    check_host(con)
    configure_repositories(con)
    update_system(con)
    configure_web_interface(con)
    configure_firewall(con, force=force)
    tune_system(con)
    if data:
        data_partition(con, force=force)


def test_apply_sysctl():
    con = invoke.MockContext(repeat=True, run={
        'test -f /proc/sys/vm/swappiness': invoke.Result(),
        'test -f /proc/sys/kernel/numa_balancing': invoke.Result(exited=1),
        'test -f /proc/sys/net/ipv4/tcp_rmem': invoke.Result(),
        "sysctl -w vm.swappiness=10": invoke.Result(),
        "sysctl -w 'net.ipv4.tcp_rmem=4096 87380 16777216'": invoke.Result(exited=255),
    })
    failed = apply_sysctl(con, 'test.conf', '''\
vm.swappiness = 10
kernel.numa_balancing = 0
net.ipv4.tcp_rmem = 4096 87380 16777216
''')
    assert failed == ['kernel.numa_balancing (not available)', 'net.ipv4.tcp_rmem']


def test_configure_repositories():
    con = invoke.MockContext(repeat=True, run={
        'test -e %s' % ENTERPRISE_LIST: invoke.Result(exited=1),
        re.compile(r"^grep -rh "): invoke.Result(
            '#deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription\n'
            '%s\n' % NO_SUBSCRIPTION_REPO),
    })
    assert not configure_repositories(con), 'uncommented entry found'


def _data_context(responses):
    run = {
        'id -u': invoke.Result('0\n'),
        'findmnt %s' % DATA_MOUNT: invoke.Result(exited=1),
        'ls -A %s' % DATA_MOUNT: invoke.Result(''),
    }
    run.update(responses)
    run[re.compile(r'.*')] = invoke.Result()
    return invoke.MockContext(repeat=True, run=run)


def _fstab(monkeypatch):
    lines = []
    monkeypatch.setattr(host, 'ensure_line',
                        lambda con, path, line, match=None: lines.append((path, line, match)))
    return lines


def test_data_partition_lvm(monkeypatch):
    lines = _fstab(monkeypatch)
    con = _data_context({
        'findmnt -n -o SOURCE /': invoke.Result('/dev/mapper/pve-root\n'),
        'pvs --noheadings -o pv_name -S vg_name=pve': invoke.Result('  /dev/nvme0n1p3\n'),
        'lsblk -no PKNAME /dev/nvme0n1p3': invoke.Result('nvme0n1\n'),
        'pvs --noheadings -o pv_name,vg_name': invoke.Result('  /dev/nvme0n1p3 pve\n'),
        'lsblk -nlpo NAME /dev/nvme0n1': invoke.Result(
            '/dev/nvme0n1\n/dev/nvme0n1p1\n/dev/nvme0n1p2\n/dev/nvme0n1p3\n/dev/mapper/pve-root\n'),
        'vgs --noheadings --nosuffix --units b -o vg_free pve': invoke.Result('  214748364800\n'),
        'lvs pve/data': invoke.Result(exited=5),
        'blkid -s UUID -o value /dev/pve/data': invoke.Result('0f3c-data\n'),
    })
    assert data_partition(con, force=True) == '/dev/pve/data'
    commands = [c[0][0] for c in con.run.call_args_list]
    assert 'lvcreate -y -l 100%FREE -n data pve' in commands
    assert 'mkfs.ext4 -F -q -L data /dev/pve/data' in commands
    assert not any(c.startswith('parted') for c in commands)
    assert commands.index('mount /data') < commands.index(
        'mkdir -p /data/containers /data/backups /data/templates /data/logs')
    assert lines == [(FSTAB, 'UUID=0f3c-data /data ext4 defaults,noatime 0 2',
                      r'^\S+\s+/data\s.*$')]


def test_data_partition_physical(monkeypatch):
    lines = _fstab(monkeypatch)
    con = _data_context({
        'findmnt -n -o SOURCE /': invoke.Result('/dev/sda2\n'),
        'command -v pvs': invoke.Result(exited=1),
        'lsblk -no PKNAME /dev/sda2': invoke.Result('sda\n'),
        'lsblk -bnlo SIZE,TYPE /dev/sda': invoke.Result(
            '240057409536 disk\n536870912 part\n129949547520 part\n'),
        'lsblk -nlo TYPE /dev/sda': invoke.Result('disk\npart\npart\n'),
        'blkid -s UUID -o value /dev/sda3': invoke.Result('77aa-data\n'),
    })
    assert data_partition(con, force=True) == '/dev/sda3'
    commands = [c[0][0] for c in con.run.call_args_list]
    assert 'parted /dev/sda --script mkpart primary ext4 -- -108497249280B -1' in commands
    assert 'mkfs.ext4 -F -q -L data /dev/sda3' in commands
    assert lines[0][1] == 'UUID=77aa-data /data ext4 defaults,noatime 0 2'


def test_data_partition_keeps_existing_content(monkeypatch):
    _fstab(monkeypatch)
    con = _data_context({
        'findmnt -n -o SOURCE /': invoke.Result('/dev/sda2\n'),
        'command -v pvs': invoke.Result(exited=1),
        'lsblk -no PKNAME /dev/sda2': invoke.Result('sda\n'),
        'lsblk -bnlo SIZE,TYPE /dev/sda': invoke.Result(
            '240057409536 disk\n536870912 part\n129949547520 part\n'),
        'lsblk -nlo TYPE /dev/sda': invoke.Result('disk\npart\npart\n'),
        'ls -A %s' % DATA_MOUNT: invoke.Result('templates\n'),
        'mktemp -d /tmp/data-backup-XXXXXX': invoke.Result('/tmp/data-backup-abc123\n'),
    })
    data_partition(con, force=True)
    commands = [c[0][0] for c in con.run.call_args_list]
    stashed = commands.index('cp -a /data/. /tmp/data-backup-abc123/')
    restored = commands.index('cp -a /tmp/data-backup-abc123/. /data/')
    assert stashed < commands.index('mount /data') < restored
    assert commands[restored + 1] == 'rm -rf /tmp/data-backup-abc123'


def test_data_partition_not_enough_space(monkeypatch):
    lines = _fstab(monkeypatch)
    con = _data_context({
        'findmnt -n -o SOURCE /': invoke.Result('/dev/sda3\n'),
        'command -v pvs': invoke.Result(exited=1),
        'lsblk -no PKNAME /dev/sda3': invoke.Result('sda\n'),
        'lsblk -bnlo SIZE,TYPE /dev/sda': invoke.Result(
            '500107862016 disk\n536870912 part\n499000000000 part\n'),
    })
    assert data_partition(con, force=True) is None
    commands = [c[0][0] for c in con.run.call_args_list]
    assert not any(c.startswith(('parted', 'lvcreate', 'mkfs')) for c in commands)
    assert 'mkdir -p /data/containers /data/backups /data/templates /data/logs' in commands
    assert lines == []
