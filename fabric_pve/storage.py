#!/usr/bin/python3
# coding: utf-8

'''mirrored storage construction for Proxmox'''
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

from collections import OrderedDict
from enum import Enum
import logging
import os.path
import re
import sys
import time


try:
    from fabric import task
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
import invoke
from invoke.exceptions import Exit, Failure
from humanize import naturalsize

from . import drives as drives_mod
from . import host
from .drives import DriveStatus, MirrorGroup


MOUNT_BASE = '/mnt/pve'
STORAGE_CFG = '/etc/pve/storage.cfg'
STORAGE_CONTENT = 'images,vztmpl,iso,snippets,backup'
MDADM_CONF = '/etc/mdadm/mdadm.conf'
FSTAB = '/etc/fstab'
INITRAMFS_MODULES = '/etc/initramfs-tools/modules'
GRUB_DEFAULTS = '/etc/default/grub'

# wiping those requires a confirmation, they probably hold data
PRECIOUS_FSTYPES = ('ext2', 'ext3', 'ext4', 'xfs', 'btrfs', 'ntfs')

ZPOOL_OPTIONS = ' '.join((
    '-o ashift=12',
    '-O compression=lz4',
    '-O atime=off',
    '-O relatime=on',
    '-O xattr=sa',
    '-O dnodesize=auto',
    '-O normalization=formD',
    '-O mountpoint=none',
    '-O canmount=off',
))


class Backend(str, Enum):
    """how mirrors are built"""

    mdadm = "mdadm"
    zfs = "zfs"

    def __str__(self):
        return self.value


class Action(str, Enum):
    """what to do with a mirror group"""

    create = "create"
    register = "register"
    system_mirror = "system-mirror"
    skip = "skip"

    def __str__(self):
        return self.value


class StorageError(Exception):
    """a storage group could not be set up, but others may"""


class SkipGroup(Exception):
    """the operator declined to touch a storage group"""


def group_label(group):
    kind = 'mirror' if len(group.drives) == 2 else 'single'
    return '%s %s (%s)' % (kind, ' + '.join(d.path for d in group.drives),
                           naturalsize(group.size))


def plan_group(group):
    """decide what to do with a mirror group, returns (Action, reason)"""
    drives = group.drives
    statuses = [d.status for d in drives]
    if DriveStatus.system in statuses:
        if len(drives) == 1:
            return Action.skip, 'lone system drive %s cannot be mirrored' % drives[0].path
        others = [d for d in drives if d.status != DriveStatus.system]
        if not others:
            return Action.skip, 'both drives are system drives'
        if others[0].status != DriveStatus.available:
            return Action.skip, 'mirror target %s is %s' % (others[0].path, others[0].status)
        return Action.system_mirror, 'clone system drive onto %s' % others[0].path
    members = {d.member for d in drives}
    member_statuses = {s for s in statuses if s in (DriveStatus.raid, DriveStatus.zfs)}
    if member_statuses:
        if (len(member_statuses) == 1 and len(set(statuses)) == 1
                and len(members) == 1 and None not in members):
            if len(drives) == 2 or DriveStatus.zfs in member_statuses:
                return Action.register, 'already in %s' % drives[0].member
            return Action.skip, '%s is part of array %s with a missing peer' % (
                drives[0].path, drives[0].member)
        return Action.skip, 'drives belong to different or unknown arrays: %s' % ', '.join(
            '%s=%s' % (d.path, d.member or d.status) for d in drives)
    return Action.create, 'new %s' % ('mirror' if len(drives) == 2 else 'single drive')


def parse_storage_cfg(text):
    """parse /etc/pve/storage.cfg into {name: {'type': ..., option: value}}"""
    storages = OrderedDict()
    current = None
    for line in (text or '').splitlines():
        if not line.strip() or line.lstrip().startswith('#'):
            continue
        if not line[0].isspace():
            kind, _, name = line.partition(':')
            current = storages[name.strip()] = {'type': kind.strip()}
        elif current is not None:
            key, _, value = line.strip().partition(' ')
            current[key] = value.strip()
    return storages


def storage_exists(con, name):
    return host.query(con, 'pvesm status -storage %s' % name).ok


def next_storage_name(con, prefix):
    """first PREFIX-N name not already used as storage or mountpoint"""
    existing = parse_storage_cfg(host.read_file(con, STORAGE_CFG))
    n = 1
    while ('%s-%d' % (prefix, n) in existing
           or host.path_exists(con, os.path.join(MOUNT_BASE, '%s-%d' % (prefix, n)))):
        n += 1
    return '%s-%d' % (prefix, n)


@task
def register_storage(con, name, path):
    '''register PATH as a Proxmox directory storage named NAME

    Returns the name of the storage, which might be different from
    NAME if PATH was already registered.'''
    existing = parse_storage_cfg(host.read_file(con, STORAGE_CFG))
    for other, options in existing.items():
        if options.get('path') == path:
            logging.info('%s already registered as storage %s', path, other)
            return other
    if storage_exists(con, name):
        logging.info('storage %s already exists, skipping', name)
        return name
    logging.info('adding %s as Proxmox storage %s', path, name)
    con.run('pvesm add dir %s --path %s --content %s' % (name, path, STORAGE_CONTENT))
    return name


def filesystem_types(con, device):
    """all filesystem signatures found on DEVICE and its partitions"""
    return host.query(con, 'lsblk -no FSTYPE %s' % device).stdout.split()


def wipe_drive(con, drive, force=False):
    '''remove filesystem and partition signatures from a drive'''
    fstypes = filesystem_types(con, drive.path)
    precious = [f for f in fstypes if f in PRECIOUS_FSTYPES]
    if precious:
        logging.warning('drive %s has filesystems: %s', drive.path, ', '.join(precious))
        if not host.confirm('wipe all data on %s?' % drive.path, force=force, strict=True):
            raise SkipGroup('operator declined to wipe %s' % drive.path)
    logging.info('wiping signatures on %s', drive.path)
    con.run('wipefs -a %s' % drive.path, hide=True)


def mount_persistent(con, device, mountpoint, fstype='ext4'):
    '''mount DEVICE on MOUNTPOINT and record it in fstab by UUID'''
    res = host.query(con, 'blkid -s UUID -o value %s' % device)
    uuid = res.stdout.strip()
    if not uuid and not con.config.run.dry:
        raise StorageError('cannot find UUID of %s' % device)
    con.run('mkdir -p %s' % mountpoint)
    line = 'UUID=%s %s %s defaults 0 2' % (uuid, mountpoint, fstype)
    host.ensure_line(con, FSTAB, line, match=r'^UUID=%s\s.*$' % re.escape(uuid))
    if host.query(con, 'mountpoint -q %s' % mountpoint).failed:
        host.mount(con, device, mountpoint)
    return mountpoint


def format_ext4(con, device, label=None):
    logging.info('creating ext4 filesystem on %s', device)
    options = '-L %s ' % label[:16] if label else ''
    con.run('mkfs.ext4 -F -q %s%s' % (options, device))


# mdadm backend

def next_md_device(con):
    arrays = drives_mod.parse_mdstat(host.read_file(con, '/proc/mdstat'))
    n = 0
    while 'md%d' % n in arrays or host.path_exists(con, '/dev/md%d' % n):
        n += 1
    return '/dev/md%d' % n


def create_md_mirror(con, md_device, paths):
    logging.info('creating RAID1 array %s from %s', md_device, ' '.join(paths))
    con.run('mdadm --create %s --level=1 --raid-devices=2 --metadata=1.2 %s --assume-clean --run'
            % (md_device, ' '.join(paths)))
    # returns non-zero when there is nothing to wait for
    con.run('mdadm --wait %s' % md_device, warn=True, hide=True)


@task
def save_mdadm_config(con):
    '''record the running arrays in mdadm.conf and refresh the initramfs'''
    host.backup_file(con, MDADM_CONF)
    scan = host.query(con, 'mdadm --detail --scan').stdout
    for line in scan.splitlines():
        m = re.match(r'^ARRAY\s+(\S+)\s', line)
        if not m:
            continue
        host.ensure_line(con, MDADM_CONF, line, match=r'^ARRAY\s+%s\s.*$' % re.escape(m.group(1)))
    if con.run('update-initramfs -u', warn=True, hide=True).failed:
        logging.warning('failed to update initramfs, arrays may not assemble at boot')


def create_mdadm_storage(con, group, force=False):
    for drive in group.drives:
        wipe_drive(con, drive, force=force)
    if len(group.drives) == 2:
        device = next_md_device(con)
        create_md_mirror(con, device, [d.path for d in group.drives])
        name = next_storage_name(con, 'raid-mirror')
    else:
        device = group.drives[0].path
        name = next_storage_name(con, 'single-drive')
    format_ext4(con, device, label=name)
    mountpoint = mount_persistent(con, device, os.path.join(MOUNT_BASE, name))
    return register_storage(con, name, mountpoint)


# zfs backend

@task
def ensure_zfs(con):
    '''install the ZFS userland if missing'''
    if host.command_exists(con, 'zpool'):
        return False
    logging.info('installing zfsutils-linux on %s', host.hostname(con))
    host.apt_install(con, ['zfsutils-linux'], update=True)
    con.run('modprobe zfs', warn=True)
    return True


def next_pool_name(con):
    existing = host.query(con, 'zpool list -H -o name').stdout.split()
    n = 1
    while 'zpool%d' % n in existing:
        n += 1
    return 'zpool%d' % n


def create_zfs_storage(con, group, force=False):
    for drive in group.drives:
        wipe_drive(con, drive, force=force)
    pool = next_pool_name(con)
    paths = ' '.join(d.path for d in group.drives)
    if len(group.drives) == 2:
        vdev = 'mirror %s' % paths
        prefix = 'zfs-mirror'
    else:
        vdev = paths
        prefix = 'zfs-single'
    logging.info('creating ZFS pool %s on %s', pool, paths)
    con.run('zpool create -f %s %s %s' % (ZPOOL_OPTIONS, pool, vdev))
    mountpoint = ensure_zfs_dataset(con, pool)
    return register_storage(con, next_storage_name(con, prefix), mountpoint)


def ensure_zfs_dataset(con, pool):
    mountpoint = os.path.join(MOUNT_BASE, pool)
    if host.query(con, 'zfs list -H -o name %s/vmdata' % pool).failed:
        con.run('zfs create -o mountpoint=%s -o canmount=on %s/vmdata' % (mountpoint, pool))
    return mountpoint


def register_existing(con, group, force=False):
    '''register storage on top of an array the drives already form'''
    drive = group.drives[0]
    if drive.status == DriveStatus.zfs:
        mountpoint = ensure_zfs_dataset(con, drive.member)
        prefix = 'zfs-mirror' if len(group.drives) == 2 else 'zfs-single'
        existing = [n for n, o in parse_storage_cfg(host.read_file(con, STORAGE_CFG)).items()
                    if o.get('path') == mountpoint]
        name = existing[0] if existing else next_storage_name(con, prefix)
        return register_storage(con, name, mountpoint)

    device = '/dev/%s' % drive.member
    for mountpoint in drive.mountpoints:
        if mountpoint.startswith(MOUNT_BASE + '/'):
            return register_storage(con, os.path.basename(mountpoint), mountpoint)
    fstype = host.query(con, 'blkid -s TYPE -o value %s' % device).stdout.strip()
    name = next_storage_name(con, 'raid-mirror')
    if fstype != 'ext4':
        if fstype and not host.confirm('format %s (currently %s) as ext4?' % (device, fstype),
                                       force=force, strict=True):
            raise SkipGroup('operator declined to format %s' % device)
        format_ext4(con, device, label=name)
    mountpoint = mount_persistent(con, device, os.path.join(MOUNT_BASE, name))
    return register_storage(con, name, mountpoint)


# system drive mirroring

def find_root_partition(con, drive):
    """the partition of DRIVE mounted on /, or its first partition"""
    output = host.query(con, 'lsblk -nlpo NAME,TYPE,MOUNTPOINT %s' % drive).stdout
    partitions = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        if fields[1] == 'part':
            partitions.append(fields[0])
            if len(fields) > 2 and fields[2] == '/':
                return fields[0]
    if partitions:
        return partitions[0]
    raise StorageError('no partition found on system drive %s' % drive)


def partition_candidates(partition, target_drive):
    """possible names of PARTITION's twin on TARGET_DRIVE

    >>> partition_candidates('/dev/sda3', '/dev/sdb')
    ['/dev/sdb3', '/dev/sdbp3']
    >>> partition_candidates('/dev/nvme0n1p2', '/dev/nvme1n1')
    ['/dev/nvme1n12', '/dev/nvme1n1p2']
    """
    m = re.search(r'(\d+)$', partition)
    number = m.group(1) if m else '1'
    return ['%s%s' % (target_drive, number), '%sp%s' % (target_drive, number)]


def replace_fstab_source(text, new_uuid, old_uuid=None, old_device=None):
    """point fstab entries at the RAID device instead of the old partition

    >>> replace_fstab_source('UUID=1234 / ext4 errors=remount-ro 0 1\\n', 'abcd', old_uuid='1234')
    'UUID=abcd / ext4 errors=remount-ro 0 1\\n'
    >>> replace_fstab_source('/dev/sda3 / ext4 defaults 0 1\\n', 'abcd', old_device='/dev/sda3')
    'UUID=abcd / ext4 defaults 0 1\\n'
    """
    if old_uuid:
        return re.sub(r'(?m)^UUID=%s(?=\s)' % re.escape(old_uuid), 'UUID=%s' % new_uuid, text)
    return re.sub(r'(?m)^%s(?=\s)' % re.escape(old_device), 'UUID=%s' % new_uuid, text)


def update_fstab_for_raid(con, old_partition, md_device):
    md_uuid = host.query(con, 'blkid -s UUID -o value %s' % md_device).stdout.strip()
    if not md_uuid:
        raise StorageError('cannot find UUID of %s' % md_device)
    old_uuid = host.query(con, 'blkid -s UUID -o value %s' % old_partition).stdout.strip()
    fstab = host.read_file(con, FSTAB) or ''
    content = replace_fstab_source(fstab, md_uuid, old_uuid=old_uuid or None,
                                   old_device=old_partition)
    if content == fstab:
        logging.warning('no fstab entry found for %s, leaving fstab alone', old_partition)
        return False
    host._rewrite_file(con, FSTAB, content)
    return True


def update_boot_for_raid(con, md_device, drives):
    '''make sure the system can boot off the new RAID1 array'''
    logging.info('adding RAID modules to the initramfs')
    for module in ('raid1', 'md_mod'):
        host.ensure_line(con, INITRAMFS_MODULES, module)
    if con.run('update-initramfs -u -k all', warn=True).failed:
        logging.warning('failed to update initramfs, continuing')

    if host.path_exists(con, GRUB_DEFAULTS):
        host.backup_file(con, GRUB_DEFAULTS)
        host.ensure_line(con, GRUB_DEFAULTS, 'GRUB_PRELOAD_MODULES="raid mdraid1x"',
                         match=r'^GRUB_PRELOAD_MODULES=.*$')
        uuid = host.query(con, 'blkid -s UUID -o value %s' % md_device).stdout.strip()
        if uuid:
            host.ensure_line(con, GRUB_DEFAULTS, 'GRUB_DEVICE_BOOT=UUID=%s' % uuid,
                             match=r'^GRUB_DEVICE_BOOT=.*$')
    for drive in drives:
        logging.info('installing GRUB on %s', drive)
        if con.run('grub-install %s' % drive, warn=True).failed:
            logging.warning('failed to install GRUB on %s', drive)
    if con.run('update-grub', warn=True).failed:
        logging.warning('failed to update GRUB configuration')


@task
def mirror_system_drive(con, system_drive, target_drive, md_device=None):
    '''turn the system drive into a RAID1 array with TARGET_DRIVE

    This is the delicate one: the partition table is cloned onto the
    target, a degraded array is built on the target partition, the
    running system partition is copied in raw, then the original
    partition is added back to the array, which resyncs.'''
    if md_device is None:
        md_device = next_md_device(con)
    system_partition = find_root_partition(con, system_drive)
    logging.info('STEP 1: cloning partition table from %s to %s', system_drive, target_drive)
    con.run('sfdisk -d %s | sfdisk --force %s' % (system_drive, target_drive))
    con.run('partprobe %s' % target_drive, warn=True)
    if not con.config.run.dry:
        time.sleep(3)
    target_partition = None
    for candidate in partition_candidates(system_partition, target_drive):
        if host.path_exists(con, candidate):
            target_partition = candidate
            break
    if target_partition is None:
        raise StorageError('cannot find partition matching %s on %s'
                           % (system_partition, target_drive))

    logging.info('STEP 2: creating degraded array %s on %s', md_device, target_partition)
    con.run('mdadm --create %s --level=1 --raid-devices=2 missing %s --force --run'
            % (md_device, target_partition))

    logging.info('STEP 3: copying %s to %s, this will take a while', system_partition, md_device)
    res = con.run('dd if=%s of=%s bs=64K status=progress' % (system_partition, md_device),
                  warn=True)
    if res.failed:
        # the array is a little smaller than the partition because of
        # the superblock, so dd runs out of room on the last blocks
        if 'No space left on device' in res.stderr:
            logging.warning('copy stopped at the end of %s, check the filesystem fits', md_device)
        else:
            raise StorageError('failed to copy %s to %s' % (system_partition, md_device))

    logging.info('STEP 4: adding %s to %s', system_partition, md_device)
    con.run('mdadm --add %s %s' % (md_device, system_partition))

    logging.info('STEP 5: updating fstab')
    update_fstab_for_raid(con, system_partition, md_device)

    logging.info('STEP 6: updating boot loader')
    update_boot_for_raid(con, md_device, [system_drive, target_drive])

    logging.warning('array %s is resyncing, reboot to test booting from RAID', md_device)
    return md_device


def setup_system_mirror(con, group, force=False):
    system = [d for d in group.drives if d.status == DriveStatus.system][0]
    target = [d for d in group.drives if d.status != DriveStatus.system][0]
    logging.warning('%s is the system drive, mirroring it will ERASE %s',
                    system.path, target.path)
    if not host.confirm('mirror system drive %s onto %s?' % (system.path, target.path),
                        force=force, strict=True):
        raise SkipGroup('operator declined system drive mirroring')
    wipe_drive(con, target, force=force)
    return mirror_system_drive(con, system.path, target.path)


def setup_group(con, group, action, backend, force=False):
    if action == Action.register:
        return register_existing(con, group, force=force)
    if action == Action.system_mirror:
        return setup_system_mirror(con, group, force=force)
    if backend == Backend.zfs:
        return create_zfs_storage(con, group, force=force)
    return create_mdadm_storage(con, group, force=force)


@task(help={
    'backend': 'mdadm or zfs (default: zfs)',
    'include-members': 'also consider drives already in RAID/ZFS arrays (asked otherwise)',
    'mirror-system': 'allow mirroring the system drive with a spare',
    'force': 'do not ask for confirmations, leave array members alone',
    'dry-run': 'show the plan and stop',
})
def setup(con, backend='zfs', include_members=False, mirror_system=False,
          force=False, dry_run=False):
    '''build mirrored storage out of spare drives and register it in Proxmox'''
    backend = Backend(backend)
    host.check_root(con)
    inventory = drives_mod.inventory(con)
    members = [d for d in inventory if d.status in (DriveStatus.raid, DriveStatus.zfs)]
    if members and not (include_members or force or dry_run):
        logging.warning('%d drives already belong to RAID or ZFS arrays: %s',
                        len(members), ', '.join(d.path for d in members))
        include_members = host.confirm('include drives already in arrays?')
    candidates = drives_mod.select_candidates(inventory, include_members=include_members,
                                              include_system=mirror_system)
    groups = drives_mod.group_drives_by_size(candidates)
    if not groups:
        logging.warning('no drives available for storage on %s', host.hostname(con))
        return []
    plans = [(group,) + plan_group(group) for group in groups]
    for group, action, reason in plans:
        logging.info('%s: %s (%s)', group_label(group), action, reason)
    if dry_run:
        for group, action, reason in plans:
            print('%s: %s (%s)' % (group_label(group), action, reason))
        return plans

    if any(action == Action.create for _, action, _ in plans):
        if backend == Backend.zfs:
            ensure_zfs(con)
        else:
            host.check_dependencies(con, ['mdadm', 'mkfs.ext4'])
    host.check_dependencies(con, ['pvesm', 'wipefs'])

    succeeded, failed = [], []
    arrays_changed = False
    for group, action, reason in plans:
        label = group_label(group)
        if action == Action.skip:
            logging.warning('skipping %s: %s', label, reason)
            continue
        try:
            name = setup_group(con, group, action, backend, force=force)
        except SkipGroup as e:
            logging.warning('skipping %s: %s', label, e)
            continue
        except (Failure, StorageError) as e:
            logging.error('failed to set up %s: %s', label, e)
            failed.append(label)
            continue
        logging.info('%s ready as %s', label, name)
        succeeded.append(name)
        if action == Action.system_mirror or (
                action == Action.create and backend == Backend.mdadm and len(group.drives) == 2):
            arrays_changed = True
    if arrays_changed:
        save_mdadm_config(con)
    if failed:
        logging.warning('%d storage groups failed: %s', len(failed), '; '.join(failed))
        if not succeeded:
            raise Exit('failed to set up any storage on %s' % host.hostname(con))
    return succeeded


# teardown

# arrays mounted here are never torn down
PROTECTED_MOUNTPOINTS = drives_mod.SYSTEM_MOUNTPOINTS + ('/opt', '/tmp')


def is_system_array(con, md_name):
    mountpoints = host.query(con, 'findmnt -n -o TARGET -S /dev/%s' % md_name).stdout.split()
    if any(m in PROTECTED_MOUNTPOINTS for m in mountpoints):
        return True
    root = host.query(con, 'findmnt -n -o SOURCE /').stdout.strip()
    return bool(re.match(r'^/dev/%sp?\d*$' % re.escape(md_name), root))


def filter_lines(text, pattern):
    """drop the lines matching PATTERN

    >>> filter_lines('a\\nUUID=1 /mnt/pve/x ext4\\nb\\n', r'^UUID=1\\s')
    'a\\nb\\n'
    """
    regex = re.compile(pattern)
    return ''.join(line for line in text.splitlines(True) if not regex.search(line))


def _drop_lines(con, path, pattern):
    content = host.read_file(con, path)
    if content is None:
        return False
    new = filter_lines(content, pattern)
    if new == content:
        return False
    host._rewrite_file(con, path, new)
    return True


def unregister_path(con, path):
    for name, options in parse_storage_cfg(host.read_file(con, STORAGE_CFG)).items():
        if options.get('path') == path or options.get('path', '').startswith(path + '/'):
            logging.info('removing Proxmox storage %s', name)
            if con.run('pvesm remove %s' % name, warn=True).failed:
                logging.warning('failed to remove Proxmox storage %s', name)


def remove_md_array(con, md_name, members, force=False):
    device = '/dev/%s' % md_name
    uuid = host.query(con, 'blkid -s UUID -o value %s' % device).stdout.strip()
    for mountpoint in host.query(con, 'findmnt -n -o TARGET -S %s' % device).stdout.split():
        unregister_path(con, mountpoint)
        logging.info('unmounting %s', mountpoint)
        if host.umount(con, mountpoint, warn=True).failed:
            if not force:
                raise StorageError('cannot unmount %s, use --force' % mountpoint)
            con.run('umount -l %s' % mountpoint, warn=True)
    if uuid:
        _drop_lines(con, FSTAB, r'^UUID=%s\s' % re.escape(uuid))
    if con.run('mdadm --stop %s' % device, warn=True).failed:
        logging.warning('failed to stop %s, forcing', device)
        con.run('mdadm --stop --force %s' % device)
    for member in members:
        if con.run('mdadm --zero-superblock /dev/%s' % member, warn=True).failed:
            logging.warning('failed to clear superblock from /dev/%s', member)
    _drop_lines(con, MDADM_CONF, r'^ARRAY\s+(%s|/dev/md/%s)\s' % (re.escape(device), re.escape(md_name)))


def remove_zfs_pool(con, pool):
    unregister_path(con, os.path.join(MOUNT_BASE, pool))
    con.run('zpool destroy -f %s' % pool)


@task(help={
    'force': 'do not ask for confirmation, force unmounts',
    'dry-run': 'only list what would be removed',
})
def remove(con, force=False, dry_run=False):
    '''tear down the non-system arrays and pools built by `setup`'''
    host.check_root(con)
    arrays = drives_mod.parse_mdstat(host.read_file(con, '/proc/mdstat'))
    targets = []
    for md_name, members in arrays.items():
        if is_system_array(con, md_name):
            logging.info('keeping system array %s', md_name)
            continue
        targets.append(('md', md_name, members))
    if host.command_exists(con, 'zpool'):
        for pool in host.query(con, 'zpool list -H -o name').stdout.split():
            # only the pools we created, never rpool
            if re.match(r'^zpool\d+$', pool):
                targets.append(('zfs', pool, []))
    if not targets:
        logging.info('nothing to remove on %s', host.hostname(con))
        return []
    for kind, name, members in targets:
        logging.warning('will remove %s %s %s', kind, name, ' '.join(members))
    if dry_run:
        return targets
    if not host.confirm('destroy %d arrays and pools?' % len(targets), force=force, strict=True):
        logging.info('removal cancelled')
        return []
    removed = []
    for kind, name, members in targets:
        try:
            if kind == 'md':
                remove_md_array(con, name, members, force=force)
            else:
                remove_zfs_pool(con, name)
        except (Failure, StorageError) as e:
            logging.error('failed to remove %s: %s', name, e)
            continue
        removed.append(name)
    if any(kind == 'md' for kind, _, _ in targets):
        con.run('update-initramfs -u', warn=True, hide=True)
    return removed


def format_drive(con, path):
    '''clear RAID superblocks, signatures and the first 100MB of PATH'''
    logging.info('formatting %s', path)
    con.run('mdadm --zero-superblock %s' % path, warn=True, hide=True)
    ok = True
    if con.run('wipefs -af %s' % path, warn=True, hide=True).failed:
        logging.warning('failed to clear signatures on %s', path)
        ok = False
    if con.run('dd if=/dev/zero of=%s bs=1M count=100' % path, warn=True, hide=True).failed:
        logging.warning('failed to zero the start of %s', path)
        ok = False
    con.run('partprobe %s' % path, warn=True, hide=True)
    return ok


@task(help={
    'force': 'do not ask for confirmation',
    'dry-run': 'only list the drives that would be formatted',
})
def format_drives(con, force=False, dry_run=False):
    '''stop the non-system arrays and wipe every drive not holding the system

    This destroys all data on those drives, to start over with `setup`.
    Drives mounted outside of an array are left alone.'''
    host.check_root(con)
    targets = []
    for drive in drives_mod.inventory(con):
        if drive.status == DriveStatus.system:
            continue
        if drive.status == DriveStatus.mounted:
            logging.warning('leaving %s alone, mounted on %s',
                            drive.path, ', '.join(drive.mountpoints))
            continue
        targets.append(drive)
    if not targets:
        logging.info('no drives to format on %s', host.hostname(con))
        return []
    for drive in targets:
        logging.warning('will format %s', drives_mod.describe(drive))
    mdstat = drives_mod.parse_mdstat(host.read_file(con, '/proc/mdstat'))
    arrays = [(name, members) for name, members in mdstat.items()
              if not is_system_array(con, name)]
    pools = list(OrderedDict.fromkeys(d.member for d in targets
                                      if d.status == DriveStatus.zfs and d.member))
    if dry_run:
        return [d.path for d in targets]
    if not host.confirm('permanently destroy all data on %d drives?' % len(targets),
                        force=force, strict=True):
        logging.info('formatting cancelled')
        return []

    for name, members in arrays:
        try:
            remove_md_array(con, name, members, force=True)
        except (Failure, StorageError) as e:
            logging.warning('failed to stop array %s: %s', name, e)
    for pool in pools:
        try:
            remove_zfs_pool(con, pool)
        except Failure as e:
            logging.warning('failed to destroy pool %s: %s', pool, e)
    formatted = [d.path for d in targets if format_drive(con, d.path)]
    if arrays:
        con.run('update-initramfs -u', warn=True, hide=True)
    logging.info('%d drives ready for a fresh storage setup', len(formatted))
    return formatted


STORAGE_CFG_FIXTURE = '''dir: local
\tpath /var/lib/vz
\tcontent iso,vztmpl,backup

zfspool: local-zfs
\tpool rpool/data
\tsparse
\tcontent images,rootdir

dir: zfs-mirror-1
\tpath /mnt/pve/zpool1
\tcontent images,vztmpl,iso,snippets,backup
'''


def _drive(path, status=DriveStatus.available, member=None, size=4000787030016):
    return drives_mod.Drive(path, size, None, member, status, ())


def test_parse_storage_cfg():
    storages = parse_storage_cfg(STORAGE_CFG_FIXTURE)
    assert list(storages) == ['local', 'local-zfs', 'zfs-mirror-1']
    assert storages['local']['path'] == '/var/lib/vz'
    assert storages['local-zfs']['type'] == 'zfspool'
    assert storages['local-zfs']['sparse'] == ''
    assert parse_storage_cfg(None) == {}


def test_plan_group():
    a, b = _drive('/dev/sda'), _drive('/dev/sdb')
    assert plan_group(MirrorGroup(a.size, (a, b)))[0] == Action.create
    assert plan_group(MirrorGroup(a.size, (a,)))[0] == Action.create

    r1 = _drive('/dev/sdc', DriveStatus.raid, 'md0')
    r2 = _drive('/dev/sdd', DriveStatus.raid, 'md0')
    r3 = _drive('/dev/sde', DriveStatus.raid, 'md1')
    assert plan_group(MirrorGroup(a.size, (r1, r2)))[0] == Action.register
    assert plan_group(MirrorGroup(a.size, (r1, r3)))[0] == Action.skip
    assert plan_group(MirrorGroup(a.size, (r1, a)))[0] == Action.skip
    assert plan_group(MirrorGroup(a.size, (r1,)))[0] == Action.skip

    z = _drive('/dev/sdf', DriveStatus.zfs, 'zpool2')
    assert plan_group(MirrorGroup(a.size, (z,)))[0] == Action.register

    system = _drive('/dev/nvme0n1', DriveStatus.system)
    assert plan_group(MirrorGroup(a.size, (system,)))[0] == Action.skip
    assert plan_group(MirrorGroup(a.size, (system, a)))[0] == Action.system_mirror
    assert plan_group(MirrorGroup(a.size, (system, r1)))[0] == Action.skip


def test_register_storage():
    con = invoke.MockContext(repeat=True, run={
        'pvesm status -storage raid-mirror-1': invoke.Result(exited=2),
        'pvesm add dir raid-mirror-1 --path /mnt/pve/raid-mirror-1 --content %s'
        % STORAGE_CONTENT: invoke.Result(),
    })
    # no storage.cfg outside of a Proxmox node, read_file() returns None
    assert register_storage(con, 'raid-mirror-1', '/mnt/pve/raid-mirror-1') == 'raid-mirror-1'
    con.run.assert_any_call(
        'pvesm add dir raid-mirror-1 --path /mnt/pve/raid-mirror-1 --content %s' % STORAGE_CONTENT)


def test_register_storage_existing():
    con = invoke.MockContext(repeat=True, run={
        'pvesm status -storage raid-mirror-1': invoke.Result(),
    })
    assert register_storage(con, 'raid-mirror-1', '/mnt/pve/raid-mirror-1') == 'raid-mirror-1'
    assert con.run.call_count == 1


def test_create_zfs_storage():
    a, b = _drive('/dev/sda'), _drive('/dev/sdb')
    con = invoke.MockContext(repeat=True, run={
        'lsblk -no FSTYPE /dev/sda': invoke.Result(),
        'lsblk -no FSTYPE /dev/sdb': invoke.Result(),
        'wipefs -a /dev/sda': invoke.Result(),
        'wipefs -a /dev/sdb': invoke.Result(),
        'zpool list -H -o name': invoke.Result('rpool\nzpool1\n'),
        'zpool create -f %s zpool2 mirror /dev/sda /dev/sdb' % ZPOOL_OPTIONS: invoke.Result(),
        'zfs list -H -o name zpool2/vmdata': invoke.Result(exited=1),
        'zfs create -o mountpoint=/mnt/pve/zpool2 -o canmount=on zpool2/vmdata': invoke.Result(),
        'test -e /mnt/pve/zfs-mirror-1': invoke.Result(exited=1),
        'pvesm status -storage zfs-mirror-1': invoke.Result(exited=2),
        'pvesm add dir zfs-mirror-1 --path /mnt/pve/zpool2 --content %s'
        % STORAGE_CONTENT: invoke.Result(),
    })
    assert create_zfs_storage(con, MirrorGroup(a.size, (a, b))) == 'zfs-mirror-1'


def test_wipe_drive_declined(monkeypatch):
    import pytest

    monkeypatch.setattr('builtins.input', lambda prompt: 'no')
    con = invoke.MockContext(repeat=True, run={
        'lsblk -no FSTYPE /dev/sda': invoke.Result('ext4\n'),
    })
    with pytest.raises(SkipGroup):
        wipe_drive(con, _drive('/dev/sda'))


def test_plan_fixture_with_members():
    inventory = drives_mod.parse_lsblk(drives_mod.LSBLK_FIXTURE)
    candidates = drives_mod.select_candidates(inventory, include_members=True)
    plans = [([d.path for d in g.drives],) + plan_group(g)
             for g in drives_mod.group_drives_by_size(candidates)]
    assert [(paths, action) for paths, action, _ in plans] == [
        (['/dev/sda', '/dev/sde'], Action.create),
        (['/dev/sdb'], Action.skip),
        (['/dev/sdc'], Action.register),
    ]


def test_setup_include_members_is_a_flag():
    kinds = {a.name.replace('-', '_'): a.kind for a in setup.get_arguments()}
    assert kinds['include_members'] is bool


def _fake_files(monkeypatch, files):
    '''serve read_file() from FILES and record rewrites instead of touching the host'''
    written = {}
    monkeypatch.setattr(host, 'read_file', lambda con, path: files.get(path))
    monkeypatch.setattr(host, '_rewrite_file',
                        lambda con, path, content, backup_dir=None: written.update({path: content}))
    lines = []
    monkeypatch.setattr(host, 'ensure_line',
                        lambda con, path, line, match=None, ensure_newline=True:
                        lines.append((path, line)))
    return written, lines


def _commands(con):
    return [c[0][0] for c in con.run.call_args_list]


def _setup_with(monkeypatch, inventory, fail):
    module = sys.modules[__name__]
    monkeypatch.setattr(host, 'check_root', lambda con: True)
    monkeypatch.setattr(host, 'check_dependencies', lambda con, command: True)
    monkeypatch.setattr(drives_mod, 'inventory', lambda con: inventory)
    monkeypatch.setattr(module, 'ensure_zfs', lambda con: False)
    done = []

    def fake_setup_group(con, group, action, backend, force=False):
        if group.drives[0].path in fail:
            raise StorageError('zpool create failed on %s' % group.drives[0].path)
        done.append(group.drives[0].path)
        return 'zfs-single-%d' % len(done)

    monkeypatch.setattr(module, 'setup_group', fake_setup_group)
    return done


def test_setup_continues_after_group_failure(monkeypatch):
    inventory = [_drive('/dev/sda'), _drive('/dev/sdb'), _drive('/dev/sdc', size=2000398934016)]
    done = _setup_with(monkeypatch, inventory, fail=('/dev/sda',))
    assert setup(invoke.MockContext(), backend='zfs') == ['zfs-single-1']
    assert done == ['/dev/sdc']


def test_setup_fails_when_every_group_fails(monkeypatch):
    import pytest

    inventory = [_drive('/dev/sda'), _drive('/dev/sdb'), _drive('/dev/sdc', size=2000398934016)]
    _setup_with(monkeypatch, inventory, fail=('/dev/sda', '/dev/sdc'))
    with pytest.raises(Exit):
        setup(invoke.MockContext(), backend='zfs')


def test_create_mdadm_storage(monkeypatch):
    written, lines = _fake_files(monkeypatch, {
        '/proc/mdstat': 'md0 : active raid1 sdc[0] sdd[1]\n',
        STORAGE_CFG: STORAGE_CFG_FIXTURE,
    })
    con = invoke.MockContext(repeat=True, run={
        re.compile(r'^lsblk -no FSTYPE '): invoke.Result(''),
        'test -e /dev/md1': invoke.Result(exited=1),
        'test -e /mnt/pve/raid-mirror-1': invoke.Result(exited=1),
        'blkid -s UUID -o value /dev/md1': invoke.Result('3f1c2a9e-md1\n'),
        'mountpoint -q /mnt/pve/raid-mirror-1': invoke.Result(exited=1),
        'pvesm status -storage raid-mirror-1': invoke.Result(exited=2),
        re.compile(r'.*'): invoke.Result(),
    })
    a, b = _drive('/dev/sda'), _drive('/dev/sdb')
    assert create_mdadm_storage(con, MirrorGroup(a.size, (a, b))) == 'raid-mirror-1'
    commands = _commands(con)
    assert commands.index('wipefs -a /dev/sdb') < commands.index(
        'mdadm --create /dev/md1 --level=1 --raid-devices=2 --metadata=1.2 '
        '/dev/sda /dev/sdb --assume-clean --run')
    assert 'mkfs.ext4 -F -q -L raid-mirror-1 /dev/md1' in commands
    assert 'mount /dev/md1 /mnt/pve/raid-mirror-1' in commands
    assert 'pvesm add dir raid-mirror-1 --path /mnt/pve/raid-mirror-1 --content %s' \
        % STORAGE_CONTENT in commands
    assert (FSTAB, 'UUID=3f1c2a9e-md1 /mnt/pve/raid-mirror-1 ext4 defaults 0 2') in lines


def _mirror_context(dd):
    return invoke.MockContext(repeat=True, run={
        'lsblk -nlpo NAME,TYPE,MOUNTPOINT /dev/nvme0n1': invoke.Result(
            '/dev/nvme0n1 disk\n/dev/nvme0n1p1 part /boot/efi\n/dev/nvme0n1p2 part /\n'),
        'test -e /dev/nvme1n12': invoke.Result(exited=1),
        'test -e /dev/nvme1n1p2': invoke.Result(),
        'test -e %s' % GRUB_DEFAULTS: invoke.Result(),
        'dd if=/dev/nvme0n1p2 of=/dev/md1 bs=64K status=progress': dd,
        'blkid -s UUID -o value /dev/md1': invoke.Result('9b7e-raid\n'),
        'blkid -s UUID -o value /dev/nvme0n1p2': invoke.Result('51d0-root\n'),
        re.compile(r'.*'): invoke.Result(),
    })


def test_mirror_system_drive(monkeypatch):
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)
    written, lines = _fake_files(monkeypatch, {
        FSTAB: 'UUID=51d0-root / ext4 errors=remount-ro 0 1\n'
               'UUID=0A1B /boot/efi vfat umask=0077 0 1\n',
    })
    # the array is a bit smaller than the partition, dd stops on the last blocks
    con = _mirror_context(invoke.Result(
        exited=1, stderr="dd: error writing '/dev/md1': No space left on device\n"))
    assert mirror_system_drive(con, '/dev/nvme0n1', '/dev/nvme1n1', md_device='/dev/md1') \
        == '/dev/md1'
    commands = _commands(con)
    assert 'sfdisk -d /dev/nvme0n1 | sfdisk --force /dev/nvme1n1' in commands
    assert 'mdadm --create /dev/md1 --level=1 --raid-devices=2 missing /dev/nvme1n1p2 --force --run' \
        in commands
    assert commands.index('mdadm --add /dev/md1 /dev/nvme0n1p2') > commands.index(
        'dd if=/dev/nvme0n1p2 of=/dev/md1 bs=64K status=progress')
    assert written[FSTAB] == ('UUID=9b7e-raid / ext4 errors=remount-ro 0 1\n'
                              'UUID=0A1B /boot/efi vfat umask=0077 0 1\n')
    assert (INITRAMFS_MODULES, 'raid1') in lines
    assert (GRUB_DEFAULTS, 'GRUB_DEVICE_BOOT=UUID=9b7e-raid') in lines
    assert 'grub-install /dev/nvme0n1' in commands
    assert 'grub-install /dev/nvme1n1' in commands


def test_mirror_system_drive_copy_error(monkeypatch):
    import pytest

    monkeypatch.setattr(time, 'sleep', lambda seconds: None)
    _fake_files(monkeypatch, {})
    con = _mirror_context(invoke.Result(
        exited=1, stderr="dd: error reading '/dev/nvme0n1p2': Input/output error\n"))
    with pytest.raises(StorageError):
        mirror_system_drive(con, '/dev/nvme0n1', '/dev/nvme1n1', md_device='/dev/md1')
    assert 'mdadm --add /dev/md1 /dev/nvme0n1p2' not in _commands(con)


def test_remove(monkeypatch):
    written, _ = _fake_files(monkeypatch, {
        '/proc/mdstat': 'md0 : active raid1 nvme0n1p2[0] nvme1n1p2[1]\n'
                        'md1 : active raid1 sdc[0] sdd[1]\n',
        STORAGE_CFG: STORAGE_CFG_FIXTURE + '\ndir: raid-mirror-1\n\tpath /mnt/pve/raid-mirror-1\n',
        FSTAB: 'UUID=9b7e-raid / ext4 errors=remount-ro 0 1\n'
               'UUID=c0ff-ee01 /mnt/pve/raid-mirror-1 ext4 defaults 0 2\n',
        MDADM_CONF: 'ARRAY /dev/md0 metadata=1.2 UUID=aaaa\n'
                    'ARRAY /dev/md1 metadata=1.2 UUID=bbbb\n',
    })
    con = invoke.MockContext(repeat=True, run={
        'id -u': invoke.Result('0\n'),
        'findmnt -n -o TARGET -S /dev/md0': invoke.Result('/\n'),
        'findmnt -n -o TARGET -S /dev/md1': invoke.Result('/mnt/pve/raid-mirror-1\n'),
        'findmnt -n -o SOURCE /': invoke.Result('/dev/md0\n'),
        'blkid -s UUID -o value /dev/md1': invoke.Result('c0ff-ee01\n'),
        'zpool list -H -o name': invoke.Result('rpool\nzpool1\n'),
        re.compile(r'.*'): invoke.Result(),
    })
    assert remove(con, force=True) == ['md1', 'zpool1']
    commands = _commands(con)
    assert 'pvesm remove raid-mirror-1' in commands
    assert 'pvesm remove zfs-mirror-1' in commands
    assert 'umount /mnt/pve/raid-mirror-1' in commands
    assert 'mdadm --stop /dev/md1' in commands
    assert 'mdadm --zero-superblock /dev/sdc' in commands
    assert 'zpool destroy -f zpool1' in commands
    assert not any('/dev/md0' in c for c in commands if c.startswith('mdadm'))
    assert 'zpool destroy -f rpool' not in commands
    assert written[FSTAB] == 'UUID=9b7e-raid / ext4 errors=remount-ro 0 1\n'
    assert written[MDADM_CONF] == 'ARRAY /dev/md0 metadata=1.2 UUID=aaaa\n'


def test_format_drives(monkeypatch):
    module = sys.modules[__name__]
    monkeypatch.setattr(drives_mod, 'inventory',
                        lambda con: drives_mod.parse_lsblk(drives_mod.LSBLK_FIXTURE))
    _fake_files(monkeypatch, {'/proc/mdstat': 'md0 : active raid1 sdb[0]\n'})
    removed = []
    monkeypatch.setattr(module, 'remove_md_array',
                        lambda con, name, members, force=False: removed.append(name))
    monkeypatch.setattr(module, 'remove_zfs_pool', lambda con, pool: removed.append(pool))
    con = invoke.MockContext(repeat=True, run={
        'id -u': invoke.Result('0\n'),
        'findmnt -n -o TARGET -S /dev/md0': invoke.Result('/mnt/pve/raid-mirror-1\n'),
        'findmnt -n -o SOURCE /': invoke.Result('/dev/nvme0n1p2\n'),
        re.compile(r'.*'): invoke.Result(),
    })
    expected = ['/dev/sda', '/dev/sdb', '/dev/sdc', '/dev/sde']
    assert format_drives(con, dry_run=True) == expected
    assert not any(c.startswith('wipefs') for c in _commands(con))

    assert format_drives(con, force=True) == expected
    assert removed == ['md0', 'zpool1']
    commands = _commands(con)
    assert 'wipefs -af /dev/sde' in commands
    assert 'dd if=/dev/zero of=/dev/sda bs=1M count=100' in commands
    # the system drive and the one mounted on /srv are left alone
    assert not any('nvme0n1' in c or '/dev/sdd' in c for c in commands)
