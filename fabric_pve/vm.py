#!/usr/bin/python3
# coding: utf-8

'''firewall virtual machines on the Proxmox host'''
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


try:
    from fabric import task
except ImportError:
    sys.stderr.write('cannot find fabric, install with `apt install python3-fabric`')  # noqa: E501
    raise
import invoke
from invoke.exceptions import Exit

from . import host
from .config import DEFAULT_ENV_FILE, load_settings
from .network import DEFAULT_IPS_FILE, load_additional_ips


ISO_DIR = '/var/lib/vz/template/iso'
PFSENSE_ISO_URL = 'https://atxfiles.netgate.com/mirror/downloads/pfSense-CE-2.7.2-RELEASE-amd64.iso.gz'  # noqa: E501
PFSENSE_ISO = 'pfSense-CE-2.7.2-RELEASE-amd64.iso'
PFSENSE_NAME = 'pfSense-Firewall'
ADMIN_ISO_URL = 'https://distro.ibiblio.org/puppylinux/puppy-bookwormpup/BookwormPup64/10.0.11/BookwormPup64_10.0.11.iso'  # noqa: E501
ADMIN_ISO = 'BookwormPup64_10.0.11.iso'
ADMIN_NAME = 'firewall-admin'

NIC_MAC_RE = re.compile(r'(?:^|,)(?:virtio|e1000|e1000e|rtl8139|vmxnet3|macaddr)=([0-9A-Fa-f:]{17})')


def vm_exists(con, vmid):
    return host.query(con, 'qm status %s' % vmid).ok


def vm_running(con, vmid):
    return 'status: running' in host.query(con, 'qm status %s' % vmid).stdout


def bridge_exists(con, bridge):
    return host.query(con, 'ip link show %s' % bridge).ok


@task
def download_iso(con, url, path):
    '''fetch an installer image, decompressing .gz downloads'''
    if host.query(con, 'test -s %s' % path).ok:
        logging.info('ISO already present at %s', path)
        return path
    con.run('mkdir -p %s' % os.path.dirname(path))
    logging.info('downloading %s', url)
    tmp = path + '.download'
    con.run('curl -fL -o %s %s' % (tmp, url))
    if url.endswith('.gz'):
        con.run('gunzip -c %s > %s' % (tmp, path))
        con.run('rm -f %s' % tmp)
    else:
        con.run('mv %s %s' % (tmp, path))
    if host.query(con, 'test -s %s' % path).failed and not con.config.run.dry:
        raise Exit('ISO %s is empty after download' % path)
    return path


def parse_qm_config(text):
    """parse `qm config` output into a dict

    >>> parse_qm_config('name: pfSense-Firewall\\nnet0: virtio=00:50:56:00:01:02,bridge=vmbr0\\n')['net0']
    'virtio=00:50:56:00:01:02,bridge=vmbr0'
    """
    config = {}
    for line in text.splitlines():
        key, sep, value = line.partition(':')
        if sep:
            config[key.strip()] = value.strip()
    return config


def nic_mac(value):
    """the MAC address of a NIC definition, in either qm syntax

    >>> nic_mac('virtio=00:50:56:00:01:02,bridge=vmbr0,firewall=0')
    '00:50:56:00:01:02'
    >>> nic_mac('virtio,bridge=vmbr0,macaddr=00:50:56:00:01:03')
    '00:50:56:00:01:03'
    >>> nic_mac('virtio,bridge=vmbr1') is None
    True
    """
    m = NIC_MAC_RE.search(value or '')
    return m.group(1) if m else None


def nic(bridge, mac=None, firewall=None):
    definition = 'virtio,bridge=%s' % bridge
    if firewall is not None:
        definition += ',firewall=%d' % firewall
    if mac:
        definition += ',macaddr=%s' % mac
    return definition


def pfsense_commands(vmid, memory, cores, disk_size, wan_mac=None, dmz=True,
                     storage='local-zfs', iso=PFSENSE_ISO, description=None):
    '''the qm commands creating the pfSense VM

    net0 is the WAN on vmbr0 and must carry the MAC Hetzner routes the
    additional IP to, net1 the LAN on vmbr1, net2 the DMZ on vmbr2.'''
    create = ['qm create %s' % vmid,
              '--name %s' % PFSENSE_NAME,
              '--ostype other',
              '--memory %s' % memory,
              '--cores %s' % cores,
              '--cpu host',
              '--onboot 1',
              '--tablet 0',
              '--boot order=ide2',
              '--cdrom local:iso/%s' % iso,
              '--machine q35']
    if description:
        create.insert(2, '--description %s' % shlex.quote(description))
    commands = [' '.join(create),
                'qm set %s --scsihw virtio-scsi-single --scsi0 %s:%s,cache=writeback,discard=on,iothread=1'  # noqa: E501
                % (vmid, storage, disk_size),
                'qm set %s --net0 %s' % (vmid, nic('vmbr0', wan_mac, firewall=0)),
                'qm set %s --net1 %s' % (vmid, nic('vmbr1', firewall=0))]
    if dmz:
        commands.append('qm set %s --net2 %s' % (vmid, nic('vmbr2', firewall=0)))
    commands.append('qm set %s --vga std --serial0 socket --watchdog i6300esb,action=reset' % vmid)
    return commands


def firewall_admin_commands(vmid, memory, cores, disk_size, wan_mac=None,
                            name=ADMIN_NAME, storage='local', iso=ADMIN_ISO):
    '''the qm commands creating the small desktop VM used to reach the pfSense UI'''
    create = ['qm create %s' % vmid,
              '--name %s' % name,
              '--memory %s' % memory,
              '--cores %s' % cores,
              '--scsihw virtio-scsi-pci',
              '--scsi0 %s:%s' % (storage, disk_size),
              '--ide2 local:iso/%s,media=cdrom' % iso,
              '--ostype l26',
              '--boot order=ide2',
              '--onboot 0',
              '--agent enabled=1',
              '--vga qxl',
              '--tablet 1']
    return [' '.join(create),
            'qm set %s --net0 %s' % (vmid, nic('vmbr1')),
            'qm set %s --net1 %s' % (vmid, nic('vmbr0', wan_mac))]


def destroy_vm(con, vmid):
    logging.warning('destroying existing VM %s', vmid)
    if vm_running(con, vmid):
        con.run('qm stop %s' % vmid)
    con.run('qm destroy %s' % vmid)


def _replace_or_abort(con, vmid, force):
    if not vm_exists(con, vmid):
        return
    if not force:
        raise Exit('VM %s already exists, use --force to recreate it or `qm destroy %s`'
                   % (vmid, vmid))
    destroy_vm(con, vmid)


def _pick_mac(ips, index, wan_ip=None):
    '''MAC of the additional IP WAN_IP, or of the INDEXth one'''
    if wan_ip:
        for entry in ips:
            if entry.ip == wan_ip:
                return entry.ip, entry.mac
        raise Exit('%s is not a configured additional IP' % wan_ip)
    if len(ips) > index:
        return ips[index].ip, ips[index].mac
    return None, None


@task(help={
    'vm-id': 'VM identifier (default: PFSENSE_VM_ID or 100)',
    'memory': 'memory in MB (default: PFSENSE_MEMORY or 2048)',
    'cores': 'CPU cores (default: PFSENSE_CPU_CORES or 2)',
    'disk-size': 'disk size in GB (default: PFSENSE_DISK_SIZE or 8)',
    'wan-ip': 'additional IP whose MAC goes on the WAN interface (default: the first)',
    'storage': 'storage for the VM disk (default: local-zfs)',
    'force': 'destroy an existing VM with the same identifier',
    'dry-run': 'print the qm commands and stop',
})
def pfsense(con, vm_id=None, memory=None, cores=None, disk_size=None, wan_ip=None,
            storage='local-zfs', force=False, dry_run=False,
            env_file=DEFAULT_ENV_FILE, config_file=DEFAULT_IPS_FILE):
    '''create the pfSense firewall VM wired to the WAN, LAN and DMZ bridges'''
    settings = load_settings(env_file)
    vmid = vm_id or settings.get_int('PFSENSE_VM_ID')
    memory = memory or settings.get_int('PFSENSE_MEMORY')
    cores = cores or settings.get_int('PFSENSE_CPU_CORES')
    disk_size = disk_size or settings.get_int('PFSENSE_DISK_SIZE')
    wan_ip, wan_mac = _pick_mac(load_additional_ips(settings, config_file), 0, wan_ip)
    if not wan_mac:
        logging.warning('no MAC for the WAN interface, Hetzner will not route additional IPs to it')  # noqa: E501

    dmz = bridge_exists(con, 'vmbr2')
    if not dmz:
        logging.warning('vmbr2 missing, creating the VM without a DMZ interface')
    description = 'pfSense firewall, WAN %s' % (wan_ip or 'unassigned')
    commands = pfsense_commands(vmid, memory, cores, disk_size, wan_mac=wan_mac, dmz=dmz,
                                storage=storage, description=description)
    if dry_run:
        for command in commands:
            print(command)
        return commands

    host.check_root(con)
    if not host.is_service_active(con, 'pveproxy'):
        raise Exit('Proxmox does not seem to be running, pveproxy is inactive')
    for bridge in ('vmbr0', 'vmbr1'):
        if not bridge_exists(con, bridge):
            raise Exit('bridge %s missing, run network.configure first' % bridge)
    _replace_or_abort(con, vmid, force)
    download_iso(con, PFSENSE_ISO_URL, os.path.join(ISO_DIR, PFSENSE_ISO))
    logging.info('creating pfSense VM %s', vmid)
    for command in commands:
        con.run(command)
    logging.warning('pfSense VM %s created, install it with `qm start %s && qm terminal %s`',
                    vmid, vmid, vmid)
    return commands


@task(help={
    'vm-id': 'VM identifier (default: FIREWALL_ADMIN_VM_ID or 200)',
    'memory': 'memory in MB (default: FIREWALL_ADMIN_MEMORY or 1024)',
    'cores': 'CPU cores (default: FIREWALL_ADMIN_CORES or 1)',
    'disk-size': 'disk size in GB (default: FIREWALL_ADMIN_DISK_SIZE or 8)',
    'wan-ip': 'additional IP whose MAC goes on the WAN interface (default: the second)',
    'force': 'destroy an existing VM with the same identifier',
    'dry-run': 'print the qm commands and stop',
})
def firewall_admin(con, vm_id=None, memory=None, cores=None, disk_size=None, wan_ip=None,
                   force=False, dry_run=False,
                   env_file=DEFAULT_ENV_FILE, config_file=DEFAULT_IPS_FILE):
    '''create a small desktop VM on the LAN to manage pfSense'''
    settings = load_settings(env_file)
    vmid = vm_id or settings.get_int('FIREWALL_ADMIN_VM_ID')
    memory = memory or settings.get_int('FIREWALL_ADMIN_MEMORY')
    cores = cores or settings.get_int('FIREWALL_ADMIN_CORES')
    disk_size = disk_size or settings.get_int('FIREWALL_ADMIN_DISK_SIZE')
    _, wan_mac = _pick_mac(load_additional_ips(settings, config_file), 1, wan_ip)
    if not wan_mac:
        logging.warning('no second additional MAC, the admin VM WAN interface gets a random one')
    commands = firewall_admin_commands(vmid, memory, cores, disk_size, wan_mac=wan_mac,
                                       name=settings.get('FIREWALL_ADMIN_HOSTNAME', ADMIN_NAME))
    if dry_run:
        for command in commands:
            print(command)
        return commands

    host.check_root(con)
    if not host.is_service_active(con, 'pveproxy'):
        raise Exit('Proxmox does not seem to be running, pveproxy is inactive')
    pfsense_id = settings.get_int('PFSENSE_VM_ID')
    if not vm_exists(con, pfsense_id):
        raise Exit('pfSense VM %s not found, run vm.pfsense first' % pfsense_id)
    _replace_or_abort(con, vmid, force)
    download_iso(con, ADMIN_ISO_URL, os.path.join(ISO_DIR, ADMIN_ISO))
    logging.info('creating firewall admin VM %s', vmid)
    for command in commands:
        con.run(command)
    logging.warning('firewall admin VM %s created, browse to the pfSense LAN address from it',
                    vmid)
    return commands


def vm_nic_mac(con, vmid, nic_name):
    res = host.query(con, 'qm config %s' % vmid)
    if res.failed:
        return None
    return nic_mac(parse_qm_config(res.stdout).get(nic_name))


@task
def check_macs(con, env_file=DEFAULT_ENV_FILE, config_file=DEFAULT_IPS_FILE):
    '''compare VM WAN MACs with the ones Hetzner expects'''
    settings = load_settings(env_file)
    ips = load_additional_ips(settings, config_file)
    for entry in ips:
        print('additional IP %s: MAC %s' % (entry.ip, entry.mac or 'not set'))
    checks = (('pfSense', settings.get_int('PFSENSE_VM_ID'), 'net0', 0),
              ('firewall admin', settings.get_int('FIREWALL_ADMIN_VM_ID'), 'net1', 1))
    mismatches = 0
    for label, vmid, nic_name, index in checks:
        expected = ips[index].mac if len(ips) > index else None
        if not vm_exists(con, vmid):
            print('%s VM %s: not created' % (label, vmid))
            continue
        actual = vm_nic_mac(con, vmid, nic_name)
        if not expected:
            print('%s VM %s %s: %s (no additional MAC to compare)' % (label, vmid, nic_name, actual))
        elif actual and actual.lower() == expected.lower():
            print('%s VM %s %s: %s OK' % (label, vmid, nic_name, actual))
        else:
            mismatches += 1
            print('%s VM %s %s: %s, expected %s' % (label, vmid, nic_name, actual, expected))
            print('  fix with: qm set %s --%s %s' % (
                vmid, nic_name, nic('vmbr0', expected, firewall=0 if index == 0 else None)))
    if mismatches:
        raise Exit('%d VM interfaces do not match the Hetzner MACs' % mismatches)
    return True


def test_pfsense_commands():
    commands = pfsense_commands(100, 2048, 2, 8, wan_mac='00:50:56:00:01:02')
    assert commands[0] == ('qm create 100 --name pfSense-Firewall --ostype other --memory 2048'
                           ' --cores 2 --cpu host --onboot 1 --tablet 0 --boot order=ide2'
                           ' --cdrom local:iso/pfSense-CE-2.7.2-RELEASE-amd64.iso --machine q35')
    assert ('qm set 100 --scsihw virtio-scsi-single'
            ' --scsi0 local-zfs:8,cache=writeback,discard=on,iothread=1') in commands
    assert 'qm set 100 --net0 virtio,bridge=vmbr0,firewall=0,macaddr=00:50:56:00:01:02' in commands
    assert 'qm set 100 --net1 virtio,bridge=vmbr1,firewall=0' in commands
    assert 'qm set 100 --net2 virtio,bridge=vmbr2,firewall=0' in commands

    commands = pfsense_commands(101, 4096, 4, 16, dmz=False, description='WAN 203.0.113.10')
    assert "--description 'WAN 203.0.113.10'" in commands[0]
    assert 'qm set 101 --net0 virtio,bridge=vmbr0,firewall=0' in commands
    assert not any('--net2' in c for c in commands)


def test_firewall_admin_commands():
    commands = firewall_admin_commands(200, 1024, 1, 8, wan_mac='00:50:56:00:01:03')
    assert commands[0].startswith('qm create 200 --name firewall-admin --memory 1024 --cores 1')
    assert '--ide2 local:iso/BookwormPup64_10.0.11.iso,media=cdrom' in commands[0]
    assert commands[1:] == ['qm set 200 --net0 virtio,bridge=vmbr1',
                            'qm set 200 --net1 virtio,bridge=vmbr0,macaddr=00:50:56:00:01:03']


def test_pfsense_refuses_existing_vm(tmp_path):
    import pytest

    con = invoke.MockContext(repeat=True, run={
        'id -u': invoke.Result('0\n'),
        'systemctl is-active --quiet pveproxy': invoke.Result(),
        'ip link show vmbr0': invoke.Result(),
        'ip link show vmbr1': invoke.Result(),
        'ip link show vmbr2': invoke.Result(exited=1),
        'qm status 100': invoke.Result('status: stopped\n'),
    })
    with pytest.raises(Exit):
        pfsense(con, env_file=str(tmp_path / 'nope.env'),
                config_file=str(tmp_path / 'nope.conf'))


def test_pick_mac():
    import pytest
    from .network import AdditionalIP

    ips = [AdditionalIP('203.0.113.10', '00:50:56:00:01:02', '203.0.113.1', '255.255.255.192'),
           AdditionalIP('203.0.113.11', None, '203.0.113.1', '255.255.255.192')]
    assert _pick_mac(ips, 0) == ('203.0.113.10', '00:50:56:00:01:02')
    assert _pick_mac(ips, 1) == ('203.0.113.11', None)
    assert _pick_mac(ips, 2) == (None, None)
    assert _pick_mac(ips, 1, wan_ip='203.0.113.10')[1] == '00:50:56:00:01:02'
    with pytest.raises(Exit):
        _pick_mac(ips, 0, wan_ip='198.51.100.99')
