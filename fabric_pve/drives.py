#!/usr/bin/python3
# coding: utf-8

'''block device inventory and mirror grouping'''
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

from collections import OrderedDict, namedtuple
from enum import Enum
import json
import logging
import os.path
import re
import sys


try:
    from fabric import task
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
from humanize import naturalsize
from invoke.exceptions import Exit

from . import host


LSBLK_COMMAND = 'lsblk --json --bytes --output NAME,PATH,SIZE,TYPE,FSTYPE,MOUNTPOINT,LABEL'

# a drive with anything mounted here is the one we booted from
SYSTEM_MOUNTPOINTS = ('/', '/boot', '/boot/efi', '/var', '/usr', '/home')

# sizes are compared after rounding to this many bytes, so that
# "500.1G" and "500G" drives still pair up
SIZE_GRANULARITY = 10**9


class DriveStatus(str, Enum):
    """what a drive is currently used for, in classification order"""

    system = "system"
    raid = "raid"
    zfs = "zfs"
    mounted = "mounted"
    available = "available"

    def __str__(self):
        return self.value


Drive = namedtuple('Drive', 'path size fstype member status mountpoints')
MirrorGroup = namedtuple('MirrorGroup', 'size drives')


def size_key(size):
    """normalize a size in bytes for grouping

    >>> size_key(500107862016)
    500
    >>> size_key(499999999999) == size_key(500107862016)
    True
    """
    return int(round(size / SIZE_GRANULARITY))


def _walk(device):
    yield device
    for child in device.get('children') or []:
        yield from _walk(child)


def _mountpoints(node):
    mountpoints = list(node.get('mountpoints') or [])
    if node.get('mountpoint'):
        mountpoints.append(node['mountpoint'])
    return [m for m in mountpoints if m]


MDSTAT_ARRAY_RE = re.compile(r'^(?P<name>md\S*)\s*:\s*(?P<rest>.*)$', re.MULTILINE)
MDSTAT_MEMBER_RE = re.compile(r'(\S+?)\[\d+\]')


def parse_mdstat(output):
    """parse /proc/mdstat into a mapping of array name to member devices

    >>> dict(parse_mdstat('''Personalities : [raid1]
    ... md0 : active raid1 sdb1[1] sda1[0]
    ...       976630464 blocks super 1.2 [2/2] [UU]
    ...
    ... md127 : active (auto-read-only) raid1 nvme1n1[1](F) nvme0n1[0]
    ... unused devices: <none>
    ... '''))
    {'md0': ['sdb1', 'sda1'], 'md127': ['nvme1n1', 'nvme0n1']}
    """
    arrays = OrderedDict()
    for m in MDSTAT_ARRAY_RE.finditer(output or ''):
        arrays[m.group('name')] = MDSTAT_MEMBER_RE.findall(m.group('rest'))
    return arrays


ZPOOL_POOL_RE = re.compile(r'^\s*pool:\s*(\S+)\s*$')
ZPOOL_DEVICE_RE = re.compile(r'^\s+(/dev/\S+)\s')


def parse_zpool_status(output):
    """parse `zpool status -P -L` into a mapping of pool to device names

    Device names are returned without the /dev/ prefix, to compare with
    lsblk names."""
    pools = OrderedDict()
    pool = None
    for line in (output or '').splitlines():
        m = ZPOOL_POOL_RE.match(line)
        if m:
            pool = m.group(1)
            pools[pool] = []
            continue
        m = ZPOOL_DEVICE_RE.match(line)
        if m and pool is not None:
            pools[pool].append(os.path.basename(m.group(1)))
    return pools


def _member_of(names, groups):
    """return the first group whose members intersect NAMES"""
    for group, members in (groups or {}).items():
        if names.intersection(members):
            return group
    return None


def classify(device, md_arrays=None, zpools=None):
    """classify a lsblk device tree into a (status, member) tuple

    The priority is: system drive, RAID member, ZFS member, mounted
    elsewhere, available.
    """
    nodes = list(_walk(device))
    names = {n.get('name') for n in nodes}
    mountpoints = [m for n in nodes for m in _mountpoints(n)]
    if any(m in SYSTEM_MOUNTPOINTS for m in mountpoints):
        member = None
        for n in nodes:
            if (n.get('type') or '').startswith('raid'):
                member = n.get('name')
                break
        return DriveStatus.system, member
    for n in nodes:
        if (n.get('type') or '').startswith('raid'):
            return DriveStatus.raid, n.get('name')
    md = _member_of(names, md_arrays)
    if md or any(n.get('fstype') == 'linux_raid_member' for n in nodes):
        return DriveStatus.raid, md
    for n in nodes:
        if n.get('fstype') == 'zfs_member':
            return DriveStatus.zfs, n.get('label') or _member_of(names, zpools)
    pool = _member_of(names, zpools)
    if pool:
        return DriveStatus.zfs, pool
    if mountpoints:
        return DriveStatus.mounted, None
    return DriveStatus.available, None


def parse_lsblk(output, md_arrays=None, zpools=None):
    """turn `lsblk --json --bytes` output into a list of Drive

    Only whole disks are returned, in the order lsblk lists them."""
    devices = json.loads(output)
    drives = []
    for device in devices.get('blockdevices', []):
        if device.get('type') != 'disk' or device.get('name', '').startswith('zram'):
            continue
        status, member = classify(device, md_arrays, zpools)
        path = device.get('path') or '/dev/' + device['name']
        drives.append(Drive(
            path=path,
            size=int(device.get('size') or 0),
            fstype=device.get('fstype'),
            member=member,
            status=status,
            mountpoints=tuple(m for n in _walk(device) for m in _mountpoints(n)),
        ))
    return drives


def pairing_key(drive):
    """drives only pair up with drives of the same size and array

    Free drives (and the system drive) have no array, so they never get
    paired with a drive that already belongs to one."""
    array = None
    if drive.status in (DriveStatus.raid, DriveStatus.zfs):
        array = drive.member or str(drive.status)
    return size_key(drive.size), array


def group_drives_by_size(drives):
    """pair drives of the same size into mirror groups

    Drives are bucketed by normalized size and array membership,
    buckets keep the order in which their first drive was seen, and
    drives are paired in enumeration order. An odd drive out in a
    bucket ends up alone in its group.
    """
    buckets = OrderedDict()
    for drive in drives:
        buckets.setdefault(pairing_key(drive), []).append(drive)
    groups = []
    for members in buckets.values():
        for i in range(0, len(members) - 1, 2):
            groups.append(MirrorGroup(members[i].size, (members[i], members[i + 1])))
        if len(members) % 2:
            groups.append(MirrorGroup(members[-1].size, (members[-1],)))
    return groups


def select_candidates(drives, include_members=False, include_system=False):
    """filter the drives that may be used to build storage

    Free drives come first, then array members, kept together by
    array."""
    allowed = {DriveStatus.available}
    if include_system:
        allowed.add(DriveStatus.system)
    free = [d for d in drives if d.status in allowed]
    if not include_members:
        return free
    arrays = OrderedDict()
    for drive in drives:
        if drive.status in (DriveStatus.raid, DriveStatus.zfs):
            arrays.setdefault(drive.member, []).append(drive)
    return free + [d for members in arrays.values() for d in members]


def describe(drive):
    """one line summary of a drive, for logs"""
    extra = ''
    if drive.member:
        extra = ' in %s' % drive.member
    elif drive.mountpoints:
        extra = ' on %s' % ', '.join(drive.mountpoints)
    return '%s (%s) %s%s' % (drive.path, naturalsize(drive.size), drive.status, extra)


@task
def inventory(con):
    '''list the disks on the host and what they are used for'''
    res = host.query(con, LSBLK_COMMAND)
    if res.failed:
        raise Exit('cannot list block devices on %s: %s' % (host.hostname(con), res.stderr))
    md_arrays = parse_mdstat(host.read_file(con, '/proc/mdstat'))
    zpools = None
    if host.command_exists(con, 'zpool'):
        zpools = parse_zpool_status(host.query(con, 'zpool status -P -L').stdout)
    drives = parse_lsblk(res.stdout, md_arrays, zpools)
    logging.info('found %d drives on %s', len(drives), host.hostname(con))
    for drive in drives:
        logging.info('  %s', describe(drive))
    return drives


@task
def show(con, include_members=False):
    '''print the drive inventory and the mirror groups that would be built'''
    drives = inventory(con)
    for drive in drives:
        print(describe(drive))
    candidates = select_candidates(drives, include_members=include_members)
    if not candidates:
        print('no drives available for storage')
    for group in group_drives_by_size(candidates):
        kind = 'mirror' if len(group.drives) == 2 else 'single'
        print('%s %s: %s' % (kind, naturalsize(group.size),
                             ' '.join(d.path for d in group.drives)))


LSBLK_FIXTURE = '''{
   "blockdevices": [
      {"name":"nvme0n1", "path":"/dev/nvme0n1", "size":512110190592, "type":"disk", "fstype":null, "mountpoint":null, "label":null,
         "children": [
            {"name":"nvme0n1p1", "path":"/dev/nvme0n1p1", "size":536870912, "type":"part", "fstype":"vfat", "mountpoint":"/boot/efi", "label":null},
            {"name":"nvme0n1p2", "path":"/dev/nvme0n1p2", "size":511571492864, "type":"part", "fstype":"ext4", "mountpoint":"/", "label":null}
         ]
      },
      {"name":"sda", "path":"/dev/sda", "size":4000787030016, "type":"disk", "fstype":null, "mountpoint":null, "label":null},
      {"name":"sdb", "path":"/dev/sdb", "size":4000787030016, "type":"disk", "fstype":"linux_raid_member", "mountpoint":null, "label":"pve:0",
         "children": [
            {"name":"md0", "path":"/dev/md0", "size":4000650887168, "type":"raid1", "fstype":"ext4", "mountpoint":"/mnt/pve/raid-mirror-1", "label":null}
         ]
      },
      {"name":"sdc", "path":"/dev/sdc", "size":4000787030016, "type":"disk", "fstype":"zfs_member", "mountpoint":null, "label":"zpool1"},
      {"name":"sdd", "path":"/dev/sdd", "size":2000398934016, "type":"disk", "fstype":null, "mountpoint":null, "label":null,
         "children": [
            {"name":"sdd1", "path":"/dev/sdd1", "size":2000397795328, "type":"part", "fstype":"xfs", "mountpoint":"/srv", "label":null}
         ]
      },
      {"name":"sde", "path":"/dev/sde", "size":4000787030016, "type":"disk", "fstype":null, "mountpoint":null, "label":null},
      {"name":"sr0", "path":"/dev/sr0", "size":1073741312, "type":"rom", "fstype":null, "mountpoint":null, "label":null}
   ]
}'''


def _drive(path, size, status=DriveStatus.available):
    return Drive(path, size, None, None, status, ())


def test_parse_lsblk():
    drives = parse_lsblk(LSBLK_FIXTURE)
    assert [d.path for d in drives] == ['/dev/nvme0n1', '/dev/sda', '/dev/sdb',
                                        '/dev/sdc', '/dev/sdd', '/dev/sde']
    status = {d.path: (d.status, d.member) for d in drives}
    assert status['/dev/nvme0n1'] == (DriveStatus.system, None)
    assert status['/dev/sda'] == (DriveStatus.available, None)
    assert status['/dev/sdb'] == (DriveStatus.raid, 'md0')
    assert status['/dev/sdc'] == (DriveStatus.zfs, 'zpool1')
    assert status['/dev/sdd'] == (DriveStatus.mounted, None)
    assert drives[1].size == 4000787030016


def test_classify_from_mdstat_and_zpool():
    device = {'name': 'sdf', 'type': 'disk', 'children': [
        {'name': 'sdf1', 'type': 'part'},
    ]}
    assert classify(device, md_arrays={'md1': ['sdg1', 'sdf1']}) == (DriveStatus.raid, 'md1')
    assert classify(device, zpools={'tank': ['sdf1']}) == (DriveStatus.zfs, 'tank')
    assert classify(device) == (DriveStatus.available, None)


def test_classify_system_before_raid():
    device = {'name': 'sda', 'type': 'disk', 'children': [
        {'name': 'sda1', 'type': 'part', 'fstype': 'linux_raid_member', 'children': [
            {'name': 'md2', 'type': 'raid1', 'mountpoint': '/'},
        ]},
    ]}
    assert classify(device) == (DriveStatus.system, 'md2')


def test_parse_zpool_status():
    output = '''  pool: zpool1
 state: ONLINE
config:

\tNAME           STATE     READ WRITE CKSUM
\tzpool1         ONLINE       0     0     0
\t  mirror-0     ONLINE       0     0     0
\t    /dev/sdc1  ONLINE       0     0     0
\t    /dev/sdf1  ONLINE       0     0     0

errors: No known data errors
'''
    assert parse_zpool_status(output) == {'zpool1': ['sdc1', 'sdf1']}


def test_group_drives_by_size_equal_drives():
    for count in range(0, 8):
        drives = [_drive('/dev/sd%s' % chr(ord('a') + i), 4000787030016) for i in range(count)]
        groups = group_drives_by_size(drives)
        pairs = [g for g in groups if len(g.drives) == 2]
        singles = [g for g in groups if len(g.drives) == 1]
        assert len(pairs) == count // 2
        assert len(singles) == count % 2
        # every drive used exactly once, in enumeration order
        assert [d for g in groups for d in g.drives] == drives


def test_group_drives_by_size_mixed():
    a, b = _drive('/dev/sda', 4000787030016), _drive('/dev/sdb', 2000398934016)
    c, d = _drive('/dev/sdc', 4000787030016), _drive('/dev/sdd', 2000398934016)
    e = _drive('/dev/sde', 4000787030016)
    groups = group_drives_by_size([a, b, c, d, e])
    assert [g.drives for g in groups] == [(a, c), (e,), (b, d)]
    for group in groups:
        assert len({size_key(x.size) for x in group.drives}) == 1


def test_group_drives_rounding():
    # same model, firmware reporting a slightly different capacity
    a, b = _drive('/dev/sda', 500107862016), _drive('/dev/sdb', 500107608064)
    assert group_drives_by_size([a, b]) == [MirrorGroup(a.size, (a, b))]


def test_select_candidates():
    drives = parse_lsblk(LSBLK_FIXTURE)
    assert [d.path for d in select_candidates(drives)] == ['/dev/sda', '/dev/sde']
    assert [d.path for d in select_candidates(drives, include_members=True)] == [
        '/dev/sda', '/dev/sde', '/dev/sdb', '/dev/sdc'], 'free drives first'
    assert '/dev/nvme0n1' in [d.path for d in select_candidates(drives, include_system=True)]


def test_group_drives_keeps_arrays_apart():
    drives = parse_lsblk(LSBLK_FIXTURE)
    groups = group_drives_by_size(select_candidates(drives, include_members=True))
    assert [[d.path for d in g.drives] for g in groups] == [
        ['/dev/sda', '/dev/sde'], ['/dev/sdb'], ['/dev/sdc']]

    a = _drive('/dev/sda', 4000787030016)
    r1 = Drive('/dev/sdb', 4000787030016, None, 'md0', DriveStatus.raid, ())
    r2 = Drive('/dev/sdc', 4000787030016, None, 'md1', DriveStatus.raid, ())
    r3 = Drive('/dev/sdd', 4000787030016, None, 'md0', DriveStatus.raid, ())
    groups = group_drives_by_size([a, r1, r2, r3])
    assert [g.drives for g in groups] == [(a,), (r1, r3), (r2,)]
