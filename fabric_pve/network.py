#!/usr/bin/python3
# coding: utf-8

'''bridge network configuration for Hetzner Proxmox hosts'''
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

from collections import namedtuple
import ipaddress
import logging
import os
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
from invoke.exceptions import Exit

from . import host
from .config import DEFAULT_ENV_FILE, load_settings


INTERFACES = '/etc/network/interfaces'
NETWORK_BACKUP_DIR = '/root/network-backups'
RESTORE_SCRIPT = '/root/restore-network.sh'
SYSCTL_FILE = '/etc/sysctl.d/99-proxmox-pfsense.conf'
DEFAULT_IPS_FILE = 'config/additional-ips.conf'

# tried in order when the bridge has no port to tell us
FALLBACK_INTERFACES = ('eth0', 'ens3', 'ens18', 'enp0s3')
FALLBACK_PREFIXLEN = 26
DEFAULT_PREFIXLEN = 24

# pfSense takes .1 on the LAN, the host sits next to it
LAN_ADDRESS = '192.168.1.10/24'
LAN_SUBNET = '192.168.1.0/24'
DMZ_ADDRESS = '10.0.2.1/24'
DMZ_SUBNET = '10.0.2.0/24'

CONNECTIVITY_CHECK = '8.8.8.8'

MAC_RE = re.compile(r'^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$')

# every contiguous netmask, /0 to /32
NETMASK_CIDR = {str(ipaddress.IPv4Network('0.0.0.0/%d' % n).netmask): n for n in range(33)}


class AdditionalIP(namedtuple('AdditionalIP', 'ip mac gateway netmask')):
    """an extra public address Hetzner routes to a given MAC"""

    @property
    def prefixlen(self):
        return netmask_to_cidr(self.netmask)

    @property
    def cidr(self):
        return '%s/%d' % (self.ip, self.prefixlen)


HostNetwork = namedtuple('HostNetwork',
                         'interface physical_interface address prefixlen gateway mac ipv6')
HostNetwork.__doc__ = '''what the host network looks like right now

`interface` carries the default route (and our SSH session),
`physical_interface` is the NIC behind it, which is the same unless
`interface` is already a bridge. `ipv6` is "address/prefix" or None.'''


def netmask_to_cidr(netmask):
    """convert a dotted netmask to a prefix length, defaulting to 24

    >>> netmask_to_cidr('255.255.255.192')
    26
    >>> netmask_to_cidr('255.255.0.0')
    16
    >>> netmask_to_cidr('0.0.0.0')
    0
    >>> netmask_to_cidr('255.0.255.0')
    24
    """
    netmask = (netmask or '').strip()
    if netmask in NETMASK_CIDR:
        return NETMASK_CIDR[netmask]
    logging.warning('unknown netmask %r, assuming /%d', netmask, DEFAULT_PREFIXLEN)
    return DEFAULT_PREFIXLEN


def is_valid_mac(mac):
    """
    >>> is_valid_mac('00:50:56:00:01:02')
    True
    >>> is_valid_mac('00-50-56-00-01-02')
    False
    """
    return bool(MAC_RE.match(mac or ''))


def parse_additional_ips_stream(lines):
    '''parse additional-ips.conf lines into AdditionalIP records

    Each line holds `IP=... MAC=... GATEWAY=... NETMASK=...`, MAC being
    optional. Lines missing any of the other fields are skipped with a
    warning.'''
    ips = []
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        fields = dict(re.findall(r'([A-Z]+)=(\S+)', line))
        missing = [k for k in ('IP', 'GATEWAY', 'NETMASK') if not fields.get(k)]
        if missing:
            logging.warning('line %d: missing %s, skipping: %s', lineno, ', '.join(missing), line)
            continue
        ips.append(AdditionalIP(fields['IP'], fields.get('MAC'),
                                fields['GATEWAY'], fields['NETMASK']))
    return ips


def additional_ips_from_settings(settings):
    '''collect ADDITIONAL_IP_1, ADDITIONAL_IP_2, ... until one is missing'''
    ips = []
    n = 1
    while settings.get('ADDITIONAL_IP_%d' % n):
        ip = settings['ADDITIONAL_IP_%d' % n]
        gateway = settings.get('ADDITIONAL_GATEWAY_%d' % n)
        netmask = settings.get('ADDITIONAL_NETMASK_%d' % n)
        if not gateway or not netmask:
            logging.warning('additional IP %d (%s) has no gateway or netmask, skipping', n, ip)
        else:
            ips.append(AdditionalIP(ip, settings.get('ADDITIONAL_MAC_%d' % n) or None,
                                    gateway, netmask))
        n += 1
    return ips


def load_additional_ips(settings, path=DEFAULT_IPS_FILE):
    '''additional IPs from PATH if it exists, otherwise from SETTINGS'''
    if path and os.path.exists(path):
        logging.info('reading additional IPs from %s', path)
        with open(path) as fp:
            return parse_additional_ips_stream(fp)
    return additional_ips_from_settings(settings)


def check_additional_ips(ips, gateway=None):
    '''sanity check additional IPs against what Hetzner expects

    A malformed address or MAC aborts, anything else only warns.'''
    for entry in ips:
        try:
            ipaddress.IPv4Address(entry.ip)
            ipaddress.IPv4Address(entry.gateway)
        except ValueError as e:
            raise Exit('invalid additional IP entry %s: %s' % (entry.ip, e))
        if not entry.mac:
            logging.warning('no MAC for %s, a virtual MAC must be requested in the Hetzner panel',
                            entry.ip)
        elif not is_valid_mac(entry.mac):
            raise Exit('invalid MAC address for %s: %s' % (entry.ip, entry.mac))
        if gateway and entry.gateway != gateway:
            logging.warning('gateway %s of %s differs from the main gateway %s',
                            entry.gateway, entry.ip, gateway)
        if not 26 <= entry.prefixlen <= 30:
            logging.warning('unusual prefix length /%d for %s, Hetzner subnets are /26 to /30',
                            entry.prefixlen, entry.ip)
    return True


def parse_default_route(output):
    """return (gateway, interface) from `ip route show default`

    >>> parse_default_route('default via 203.0.113.1 dev enp0s31f6 proto static onlink\\n')
    ('203.0.113.1', 'enp0s31f6')
    """
    m = re.search(r'^default via (\S+) dev (\S+)', output, re.MULTILINE)
    if not m:
        return None, None
    return m.group(1), m.group(2)


def parse_inet(output, family='inet'):
    """first address/prefix found in `ip -o addr show` output

    >>> parse_inet('2: vmbr0    inet 203.0.113.5/26 brd 203.0.113.63 scope global vmbr0')
    '203.0.113.5/26'
    """
    m = re.search(r'\s%s\s+(\S+)' % family, output)
    return m.group(1) if m else None


def parse_link_mac(output):
    m = re.search(r'link/ether\s+(\S+)', output)
    return m.group(1) if m else None


@task
def detect_host_network(con):
    '''find the interface, address and gateway carrying our SSH session'''
    gateway, interface = parse_default_route(host.query(con, 'ip route show default').stdout)
    if not interface:
        raise Exit('cannot find the default route on %s' % host.hostname(con))
    inet = parse_inet(host.query(con, 'ip -o -4 addr show dev %s' % interface).stdout)
    if not inet:
        raise Exit('cannot find an IPv4 address on %s' % interface)
    if '/' in inet:
        address, prefixlen = inet.split('/', 1)
        prefixlen = int(prefixlen)
    else:
        address, prefixlen = inet, FALLBACK_PREFIXLEN

    physical = interface
    if interface.startswith('vmbr'):
        ports = host.query(con, 'ls /sys/class/net/%s/brif/' % interface).stdout.split()
        if ports:
            physical = ports[0]
        else:
            for candidate in FALLBACK_INTERFACES:
                if host.path_exists(con, '/sys/class/net/%s' % candidate):
                    physical = candidate
                    break
            else:
                raise Exit('cannot find the physical interface behind %s' % interface)
    mac = parse_link_mac(host.query(con, 'ip link show %s' % physical).stdout)
    if not mac:
        raise Exit('cannot find the MAC address of %s' % physical)
    ipv6 = parse_inet(host.query(con, 'ip -o -6 addr show dev %s scope global'
                                 % interface).stdout, family='inet6')
    hostnet = HostNetwork(interface, physical, address, prefixlen, gateway, mac, ipv6)
    logging.info('host network: %s', hostnet)
    return hostnet


def lan_ipv6_address(ipv6):
    """the LAN bridge address derived from the host's IPv6 /64

    >>> lan_ipv6_address('2a01:4f8:10a:1f2::2/64')
    '2a01:4f8:10a:1f2:1::1/80'
    """
    groups = ipaddress.IPv6Interface(ipv6).ip.exploded.split(':')[:4]
    return '%s:1::1/80' % ':'.join(g.lstrip('0') or '0' for g in groups)


INTERFACES_HEADER = '''\
# network interface settings; autogenerated
# Please do NOT modify this file directly, unless you know what
# you're doing.
#
# Written by the pve-bootstrap network.configure task, previous
# versions are kept in %(backup_dir)s.

source /etc/network/interfaces.d/*

auto lo
iface lo inet loopback

iface lo inet6 loopback
'''


def render_interfaces(hostnet, additional_ips=(), dmz=True):
    '''produce a Proxmox /etc/network/interfaces for HOSTNET

    The current address moves to the vmbr0 bridge (WAN), additional IPs
    get attached to it with post-up commands, vmbr1 is a NATed LAN for
    the firewall and vmbr2 an optional DMZ.'''
    phys = hostnet.physical_interface
    lines = [INTERFACES_HEADER % {'backup_dir': NETWORK_BACKUP_DIR},
             'auto %s' % phys,
             'iface %s inet manual' % phys,
             '',
             'auto vmbr0',
             'iface vmbr0 inet static',
             '    address %s/%d' % (hostnet.address, hostnet.prefixlen),
             '    gateway %s' % hostnet.gateway,
             '    bridge-ports %s' % phys,
             '    bridge-stp off',
             '    bridge-fd 1',
             '    bridge-vlan-aware yes',
             '    bridge-vids 2-4094',
             '    hwaddress %s' % hostnet.mac,
             '    pointopoint %s' % hostnet.gateway,
             '    up sysctl -p']
    if additional_ips:
        lines += ['', '    # Additional IP addresses']
        for entry in additional_ips:
            lines += ['    post-up ip addr add %s dev vmbr0' % entry.cidr,
                      '    post-down ip addr del %s dev vmbr0' % entry.cidr]
            if entry.gateway != hostnet.gateway:
                lines += ['    post-up ip route add %s via %s dev vmbr0' % (entry.ip, entry.gateway),
                          '    post-down ip route del %s via %s dev vmbr0' % (entry.ip, entry.gateway)]
            if entry.mac:
                lines.append('    # MAC for %s: %s (configured via Hetzner panel)'
                             % (entry.ip, entry.mac))
    if hostnet.ipv6:
        lines += ['',
                  'iface vmbr0 inet6 static',
                  '    address %s' % hostnet.ipv6,
                  '    gateway fe80::1']
    lines += ['',
              '# LAN bridge, behind the firewall',
              'auto vmbr1',
              'iface vmbr1 inet static',
              '    address %s' % LAN_ADDRESS,
              '    bridge-ports none',
              '    bridge-stp off',
              '    bridge-fd 0',
              "    post-up   iptables -t nat -A POSTROUTING -s '%s' -o vmbr0 -j MASQUERADE" % LAN_SUBNET,  # noqa: E501
              "    post-down iptables -t nat -D POSTROUTING -s '%s' -o vmbr0 -j MASQUERADE" % LAN_SUBNET,  # noqa: E501
              '    post-up   iptables -t raw -I PREROUTING -i fwbr+ -j CT --zone 1',
              '    post-down iptables -t raw -D PREROUTING -i fwbr+ -j CT --zone 1']
    if hostnet.ipv6:
        lines += ['',
                  'iface vmbr1 inet6 static',
                  '    address %s' % lan_ipv6_address(hostnet.ipv6)]
    if dmz:
        lines += ['',
                  '# DMZ bridge',
                  'auto vmbr2',
                  'iface vmbr2 inet static',
                  '    address %s' % DMZ_ADDRESS,
                  '    bridge-ports none',
                  '    bridge-stp off',
                  '    bridge-fd 0',
                  "    post-up   iptables -t nat -A POSTROUTING -s '%s' -o vmbr0 -j MASQUERADE" % DMZ_SUBNET,  # noqa: E501
                  "    post-down iptables -t nat -D POSTROUTING -s '%s' -o vmbr0 -j MASQUERADE" % DMZ_SUBNET]  # noqa: E501
    return '\n'.join(lines) + '\n'


def validate_interfaces(content, hostnet):
    '''check a generated interfaces file before it goes live

    Returns a list of problems, empty if the file looks sane.'''
    errors = []
    lines = content.splitlines()
    stripped = [line.strip() for line in lines]
    required = ('auto lo',
                'iface lo inet loopback',
                'auto %s' % hostnet.physical_interface,
                'auto vmbr0',
                'iface vmbr0 inet static')
    for stanza in required:
        if stanza not in stripped:
            errors.append('missing "%s"' % stanza)
    addresses = [s.split(None, 1)[1] for s in stripped
                 if s.startswith('address ') and len(s.split()) > 1]
    if not any(a.split('/')[0] == hostnet.address for a in addresses):
        errors.append('current address %s not configured, we would lose the host'
                      % hostnet.address)
    if not any(s.startswith('gateway ') for s in stripped):
        errors.append('no gateway configured')
    ups = [line for line in lines if line.strip().startswith('post-up')]
    downs = [line for line in lines if line.strip().startswith('post-down')]
    if len(ups) != len(downs):
        errors.append('%d post-up commands but %d post-down commands' % (len(ups), len(downs)))
    for line in ups + downs:
        if not line.startswith('    ') or line.startswith('     '):
            errors.append('bad indentation: %r' % line)
    return errors


@task
def backup_network(con, backup_dir=NETWORK_BACKUP_DIR):
    '''snapshot the interfaces file, routes and addresses

    Returns the backup path of the interfaces file.'''
    backup = host._backup_file(con, INTERFACES, backup_dir)
    if backup is None:
        raise Exit('cannot backup %s, refusing to touch the network' % INTERFACES)
    stamp = backup.rsplit('.', 1)[1]
    con.run('ip route show > %s/routes.backup.%s' % (backup_dir, stamp), warn=True, hide=True)
    con.run('ip addr show > %s/interfaces.current.%s' % (backup_dir, stamp), warn=True, hide=True)
    return backup


def restore_script(backup):
    return '''#!/bin/sh
# restore the network configuration from before pve-bootstrap changed it
set -e
cp %(backup)s %(interfaces)s
systemctl restart networking
echo "network configuration restored from %(backup)s"
''' % {'backup': backup, 'interfaces': INTERFACES}


@task
def write_restore_script(con, backup):
    '''leave an emergency restore script for console access'''
    host._write_to_file(con, RESTORE_SCRIPT, restore_script(backup))
    con.run('chmod 755 %s' % RESTORE_SCRIPT, warn=True)
    logging.warning('if the host becomes unreachable, run %s from the Hetzner console',
                    RESTORE_SCRIPT)


def restore_network(con, backup):
    host.restore_file(con, backup, INTERFACES)
    con.run('systemctl restart networking', warn=True)


def apply_interfaces(con, content, hostnet, additional_ips=(), backup_dir=NETWORK_BACKUP_DIR):
    '''install a new interfaces file, rolling back on failure'''
    errors = validate_interfaces(content, hostnet)
    if errors:
        raise Exit('refusing to apply a broken configuration: %s' % '; '.join(errors))
    backup = backup_network(con, backup_dir)
    write_restore_script(con, backup)

    staged = os.path.join(backup_dir, 'interfaces.staged')
    host._write_to_file(con, staged, content)
    for pattern in ('auto vmbr0', hostnet.address):
        if con.run('grep -qF "%s" %s' % (pattern, staged), warn=True, hide=True).failed:
            raise Exit('staged configuration %s is missing "%s"' % (staged, pattern))
    if host.command_exists(con, 'ifup'):
        res = con.run('ifup --verbose --no-act --force --all --interfaces=%s' % staged,
                      warn=True, hide=True)
        if res.failed:
            logging.warning('ifup dry run complained, continuing anyway: %s', res.stderr.strip())

    logging.warning('replacing %s and restarting networking on %s',
                    INTERFACES, host.hostname(con))
    con.run('cp %s %s' % (staged, INTERFACES))
    if con.run('systemctl restart networking', warn=True).failed:
        restore_network(con, backup)
        raise Exit('networking failed to restart, restored %s' % backup)
    if not con.config.run.dry:
        time.sleep(5)
    if con.run('ping -c 1 -W 5 %s' % CONNECTIVITY_CHECK, warn=True, hide=True).failed:
        restore_network(con, backup)
        raise Exit('lost connectivity after the change, restored %s' % backup)
    addresses = host.query(con, 'ip addr show vmbr0').stdout
    for entry in additional_ips:
        if entry.cidr not in addresses:
            logging.warning('additional IP %s is not up on vmbr0', entry.cidr)
    logging.info('network configuration applied, backup in %s', backup)
    return backup


SYSCTL_CONTENT = '''\
# forwarding for the firewall VM and the NAT bridge
net.ipv4.ip_forward=1
net.ipv6.conf.all.forwarding=1

# routing performance
net.core.netdev_max_backlog=5000
net.core.rmem_default=262144
net.core.rmem_max=16777216
net.core.wmem_default=262144
net.core.wmem_max=16777216
net.ipv4.tcp_rmem=4096 65536 16777216
net.ipv4.tcp_wmem=4096 65536 16777216

net.ipv4.conf.all.rp_filter=1
net.ipv4.conf.all.accept_redirects=0
net.ipv4.conf.all.secure_redirects=0
net.ipv4.conf.all.send_redirects=0
net.ipv4.conf.default.rp_filter=1
net.ipv4.conf.default.accept_redirects=0
net.ipv4.conf.default.secure_redirects=0

# bridged traffic must reach the firewall VM untouched
net.bridge.bridge-nf-call-iptables=0
net.bridge.bridge-nf-call-ip6tables=0
'''


@task
def configure_forwarding(con):
    '''enable forwarding and bridge settings for the firewall VM'''
    host._write_to_file(con, SYSCTL_FILE, SYSCTL_CONTENT)
    host.ensure_line(con, '/etc/modules', 'br_netfilter')
    con.run('modprobe br_netfilter', warn=True)
    if con.run('sysctl -p %s' % SYSCTL_FILE, warn=True, hide=True).failed:
        logging.warning('some settings in %s could not be applied', SYSCTL_FILE)


def fix_bridge_address(con, bridge, address):
    '''make ADDRESS the IPv4 address of BRIDGE, at runtime only

    Returns True if the bridge was changed.'''
    if host.query(con, 'ip link show %s' % bridge).failed:
        logging.warning('%s is missing, run network.configure to create it', bridge)
        return False
    current = parse_inet(host.query(con, 'ip -o -4 addr show dev %s' % bridge).stdout)
    if current == address:
        logging.info('%s has the right address: %s', bridge, address)
        return False
    logging.warning('fixing %s address: %s -> %s', bridge, current or 'none', address)
    if current:
        con.run('ip addr del %s dev %s' % (current, bridge), warn=True, hide=True)
    if con.run('ip addr add %s dev %s' % (address, bridge), warn=True).failed:
        logging.error('failed to set %s on %s', address, bridge)
        return False
    return True


def fix_bridges(con, additional_ips=(), gateway=None):
    '''repair the firewall bridge addresses without touching the configuration

    Returns the list of bridges that were changed.'''
    fixed = [bridge for bridge, address in (('vmbr1', LAN_ADDRESS), ('vmbr2', DMZ_ADDRESS))
             if fix_bridge_address(con, bridge, address)]
    try:
        check_additional_ips(additional_ips, gateway)
    except Exit as e:
        logging.error('additional IP configuration has issues: %s', e)
    else:
        logging.info('additional IP configuration is valid')
    logging.info('run network.status to verify')
    return fixed


CONFIG_TEMPLATE = '''\
# Additional IP addresses routed to this host
#
# One address per line:
#
#   IP=address MAC=mac_address GATEWAY=gateway NETMASK=netmask
#
# MAC is optional but needed to bind the address to a VM, request a
# virtual MAC for each address in the Hetzner Robot panel.
#
# This file takes precedence over the ADDITIONAL_*_n settings in .env.

# IP=203.0.113.10 MAC=00:50:56:00:01:02 GATEWAY=203.0.113.1 NETMASK=255.255.255.192
# IP=203.0.113.11 MAC=00:50:56:00:01:03 GATEWAY=203.0.113.1 NETMASK=255.255.255.192
'''


def generate_config_template(path=DEFAULT_IPS_FILE, force=False):
    '''write a commented additional IPs configuration file'''
    if os.path.exists(path) and not force:
        raise Exit('%s already exists, use --force to overwrite' % path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w') as fp:
        fp.write(CONFIG_TEMPLATE)
    logging.warning('wrote %s, edit it and run network.configure again', path)
    return path


@task(help={
    'reset': 'write the baseline configuration, without additional IPs',
    'generate-config': 'write a template additional IPs file and stop',
    'force': 'do not ask for confirmation, overwrite the template',
    'dry-run': 'print the generated configuration and stop',
    'env-file': 'settings file (default: .env)',
    'config-file': 'additional IPs file (default: config/additional-ips.conf)',
    'dmz': 'add the vmbr2 DMZ bridge (default: yes)',
    'fix': 'repair the vmbr1/vmbr2 addresses in place and stop',
})
def configure(con, reset=False, generate_config=False, force=False, dry_run=False,
              env_file=DEFAULT_ENV_FILE, config_file=DEFAULT_IPS_FILE, dmz=True, fix=False):
    '''move the host address to a vmbr0 bridge and add the firewall bridges'''
    if generate_config:
        generate_config_template(config_file, force=force)
        return None
    settings = load_settings(env_file)
    host.check_root(con)
    hostnet = detect_host_network(con)
    if fix:
        return fix_bridges(con, load_additional_ips(settings, config_file), hostnet.gateway)
    if reset:
        logging.info('resetting to the baseline configuration, no additional IPs')
        additional_ips = []
    else:
        additional_ips = load_additional_ips(settings, config_file)
    check_additional_ips(additional_ips, hostnet.gateway)
    logging.info('configuring %d additional IPs', len(additional_ips))
    content = render_interfaces(hostnet, additional_ips, dmz=dmz)
    errors = validate_interfaces(content, hostnet)
    if errors:
        for error in errors:
            logging.error('generated configuration: %s', error)
        raise Exit('generated configuration failed validation')
    if dry_run:
        print(content, end='')
        return content
    if not host.confirm('replace %s on %s? the SSH session may drop'
                        % (INTERFACES, host.hostname(con)), force=force):
        logging.warning('network configuration aborted')
        return None
    configure_forwarding(con)
    return apply_interfaces(con, content, hostnet, additional_ips)


@task
def status(con, env_file=DEFAULT_ENV_FILE, config_file=DEFAULT_IPS_FILE):
    '''show bridges and whether additional IPs are up'''
    hostnet = detect_host_network(con)
    print('interface: %s (port %s, MAC %s)' % (hostnet.interface,
                                               hostnet.physical_interface, hostnet.mac))
    print('address: %s/%d via %s' % (hostnet.address, hostnet.prefixlen, hostnet.gateway))
    print('IPv6: %s' % (hostnet.ipv6 or 'none'))
    for bridge in ('vmbr0', 'vmbr1', 'vmbr2'):
        res = host.query(con, 'ip -br addr show %s' % bridge)
        print(res.stdout.strip() if res.ok else '%s: missing' % bridge)
    addresses = host.query(con, 'ip addr show vmbr0').stdout
    for entry in load_additional_ips(load_settings(env_file), config_file):
        state = 'up' if entry.cidr in addresses else 'DOWN'
        print('additional IP %s: %s (MAC %s)' % (entry.cidr, state, entry.mac or 'none'))


@task
def verify_dmz(con):
    '''check the vmbr2 DMZ bridge is configured and up'''
    problems = []
    link = host.query(con, 'ip -br link show vmbr2')
    if link.failed:
        problems.append('vmbr2 does not exist')
    elif not re.search(r'\b(UP|UNKNOWN)\b', link.stdout):
        problems.append('vmbr2 is down: %s' % link.stdout.strip())
    if DMZ_ADDRESS not in host.query(con, 'ip -o -4 addr show dev vmbr2').stdout:
        problems.append('vmbr2 does not have %s' % DMZ_ADDRESS)
    if 'auto vmbr2' not in (host.read_file(con, INTERFACES) or '').splitlines():
        problems.append('vmbr2 missing from %s' % INTERFACES)
    if problems:
        raise Exit('DMZ bridge problems: %s' % '; '.join(problems))
    logging.warning('DMZ bridge vmbr2 is up with %s', DMZ_ADDRESS)
    return True


HOSTNET = HostNetwork('enp0s31f6', 'enp0s31f6', '198.51.100.5', 26, '198.51.100.1',
                      '90:1b:0e:aa:bb:cc', None)


def test_netmask_table():
    assert netmask_to_cidr('255.255.255.0') == 24
    assert netmask_to_cidr('255.255.0.0') == 16
    assert netmask_to_cidr('255.0.0.0') == 8
    assert netmask_to_cidr('255.255.255.255') == 32
    assert netmask_to_cidr('255.255.255.248') == 29
    assert netmask_to_cidr('nonsense') == 24
    assert netmask_to_cidr('') == 24
    assert len(NETMASK_CIDR) == 33


def test_parse_additional_ips_stream():
    ips = parse_additional_ips_stream('''# comment

IP=203.0.113.10 MAC=00:50:56:00:01:02 GATEWAY=203.0.113.1 NETMASK=255.255.255.192
IP=203.0.113.11 GATEWAY=203.0.113.1 NETMASK=255.255.255.192
IP=203.0.113.12 MAC=00:50:56:00:01:04 NETMASK=255.255.255.192
IP=203.0.113.13 GATEWAY=203.0.113.1
GATEWAY=203.0.113.1 NETMASK=255.255.255.192
'''.splitlines())
    assert ips == [
        AdditionalIP('203.0.113.10', '00:50:56:00:01:02', '203.0.113.1', '255.255.255.192'),
        AdditionalIP('203.0.113.11', None, '203.0.113.1', '255.255.255.192'),
    ], 'lines without IP, gateway or netmask are skipped'


def test_additional_ips_from_settings():
    settings = {
        'ADDITIONAL_IP_1': '203.0.113.10',
        'ADDITIONAL_GATEWAY_1': '203.0.113.1',
        'ADDITIONAL_NETMASK_1': '255.255.255.192',
        'ADDITIONAL_MAC_1': '00:50:56:00:01:02',
        'ADDITIONAL_IP_2': '203.0.113.11',
        'ADDITIONAL_GATEWAY_2': '203.0.113.1',
        'ADDITIONAL_NETMASK_2': '255.255.255.192',
        # not read, 3 is missing
        'ADDITIONAL_IP_4': '203.0.113.13',
    }
    ips = additional_ips_from_settings(settings)
    assert [i.ip for i in ips] == ['203.0.113.10', '203.0.113.11']
    assert ips[1].mac is None
    assert ips[0].cidr == '203.0.113.10/26'


def test_load_additional_ips_file_wins(tmp_path):
    conf = tmp_path / 'additional-ips.conf'
    conf.write_text('IP=203.0.113.20 GATEWAY=203.0.113.1 NETMASK=255.255.255.248\n')
    settings = {'ADDITIONAL_IP_1': '203.0.113.10', 'ADDITIONAL_GATEWAY_1': '203.0.113.1',
                'ADDITIONAL_NETMASK_1': '255.255.255.192'}
    assert [i.cidr for i in load_additional_ips(settings, str(conf))] == ['203.0.113.20/29']
    assert [i.cidr for i in load_additional_ips(settings, str(tmp_path / 'nope'))] \
        == ['203.0.113.10/26']


def test_check_additional_ips():
    import pytest

    good = AdditionalIP('203.0.113.10', '00:50:56:00:01:02', '203.0.113.1', '255.255.255.192')
    assert check_additional_ips([good, good._replace(mac=None)], '198.51.100.1')
    with pytest.raises(Exit):
        check_additional_ips([good._replace(mac='00:50:56:00:01')])
    with pytest.raises(Exit):
        check_additional_ips([good._replace(ip='203.0.113.300')])


def test_render_interfaces_additional_ip():
    ips = additional_ips_from_settings({
        'ADDITIONAL_IP_1': '203.0.113.10',
        'ADDITIONAL_GATEWAY_1': '203.0.113.1',
        'ADDITIONAL_NETMASK_1': '255.255.255.192',
    })
    content = render_interfaces(HOSTNET, ips)
    lines = content.splitlines()
    assert '    post-up ip addr add 203.0.113.10/26 dev vmbr0' in lines
    assert '    post-down ip addr del 203.0.113.10/26 dev vmbr0' in lines
    # gateway differs from the main one, so a route is needed
    assert '    post-up ip route add 203.0.113.10 via 203.0.113.1 dev vmbr0' in lines
    assert '    address 198.51.100.5/26' in lines
    assert 'auto vmbr0' in lines
    assert 'auto vmbr2' in lines
    vmbr2 = content.split('auto vmbr2\n', 1)[1].splitlines()
    assert "    post-up   iptables -t nat -A POSTROUTING -s '10.0.2.0/24' -o vmbr0 -j MASQUERADE" in vmbr2  # noqa: E501
    assert "    post-down iptables -t nat -D POSTROUTING -s '10.0.2.0/24' -o vmbr0 -j MASQUERADE" in vmbr2  # noqa: E501
    assert validate_interfaces(content, HOSTNET) == []


def test_render_interfaces_baseline():
    content = render_interfaces(HOSTNET._replace(ipv6='2a01:4f8:10a:1f2::2/64'), dmz=False)
    lines = content.splitlines()
    assert 'iface enp0s31f6 inet manual' in lines
    assert '    bridge-ports enp0s31f6' in lines
    assert '    hwaddress 90:1b:0e:aa:bb:cc' in lines
    assert 'iface vmbr0 inet6 static' in lines
    assert '    address 2a01:4f8:10a:1f2:1::1/80' in lines
    assert '    # Additional IP addresses' not in lines
    assert 'auto vmbr2' not in lines
    vmbr1 = content.split('auto vmbr1\n', 1)[1].split('\n\n', 1)[0].splitlines()
    assert '    address 192.168.1.10/24' in vmbr1, 'the firewall keeps 192.168.1.1'
    assert '    address 192.168.1.1/24' not in lines
    assert validate_interfaces(content, HOSTNET) == []


def test_render_interfaces_same_gateway_no_route():
    ips = [AdditionalIP('198.51.100.6', None, '198.51.100.1', '255.255.255.192')]
    content = render_interfaces(HOSTNET, ips)
    assert 'ip route add' not in content
    assert '# MAC for' not in content


def test_validate_interfaces():
    content = render_interfaces(HOSTNET)
    errors = validate_interfaces(content.replace('198.51.100.5', '198.51.100.9'), HOSTNET)
    assert any('198.51.100.5' in e for e in errors)
    broken = content.replace('    post-down iptables -t nat', '  post-down iptables -t nat')
    assert any('indentation' in e for e in validate_interfaces(broken, HOSTNET))
    unbalanced = content + '    post-up ip addr add 203.0.113.10/26 dev vmbr0\n'
    assert any('post-up' in e for e in validate_interfaces(unbalanced, HOSTNET))
    assert 'missing "auto vmbr0"' in validate_interfaces(
        content.replace('auto vmbr0\n', ''), HOSTNET)


def test_detect_host_network():
    con = invoke.MockContext(repeat=True, run={
        'ip route show default': invoke.Result(
            'default via 198.51.100.1 dev vmbr0 proto kernel onlink\n'),
        'ip -o -4 addr show dev vmbr0': invoke.Result(
            '3: vmbr0    inet 198.51.100.5/26 brd 198.51.100.63 scope global vmbr0\n'),
        'ls /sys/class/net/vmbr0/brif/': invoke.Result('enp0s31f6\n'),
        'ip link show enp0s31f6': invoke.Result(
            '2: enp0s31f6: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\n'
            '    link/ether 90:1b:0e:aa:bb:cc brd ff:ff:ff:ff:ff:ff\n'),
        'ip -o -6 addr show dev vmbr0 scope global': invoke.Result(''),
    })
    assert detect_host_network(con) == HOSTNET._replace(interface='vmbr0')


def test_generate_config_template(tmp_path):
    import pytest

    path = str(tmp_path / 'config' / 'additional-ips.conf')
    generate_config_template(path)
    with open(path) as fp:
        assert parse_additional_ips_stream(fp) == [], 'template entries are commented out'
    with pytest.raises(Exit):
        generate_config_template(path)
    generate_config_template(path, force=True)


def test_fix_bridges():
    con = invoke.MockContext(repeat=True, run={
        'ip link show vmbr1': invoke.Result('5: vmbr1: <BROADCAST,MULTICAST,UP,LOWER_UP>\n'),
        'ip -o -4 addr show dev vmbr1': invoke.Result(
            '5: vmbr1    inet 192.168.1.1/24 scope global vmbr1\n'),
        'ip addr del 192.168.1.1/24 dev vmbr1': invoke.Result(),
        'ip addr add 192.168.1.10/24 dev vmbr1': invoke.Result(),
        'ip link show vmbr2': invoke.Result(exited=1, stderr='Device "vmbr2" does not exist.'),
    })
    assert fix_bridges(con) == ['vmbr1']
    commands = [c[0][0] for c in con.run.call_args_list]
    assert 'ip addr add 192.168.1.10/24 dev vmbr1' in commands
    assert not any(c.startswith('ip addr add') and 'vmbr2' in c for c in commands)


def test_fix_bridges_already_right():
    con = invoke.MockContext(repeat=True, run={
        re.compile(r'^ip link show vmbr[12]$'): invoke.Result(),
        'ip -o -4 addr show dev vmbr1': invoke.Result(
            '5: vmbr1    inet 192.168.1.10/24 scope global vmbr1\n'),
        'ip -o -4 addr show dev vmbr2': invoke.Result(
            '6: vmbr2    inet 10.0.2.1/24 scope global vmbr2\n'),
    })
    assert fix_bridges(con) == []


def _apply_context(restart=0, ping=0):
    return invoke.MockContext(repeat=True, run={
        'systemctl restart networking': invoke.Result(exited=restart),
        'ping -c 1 -W 5 %s' % CONNECTIVITY_CHECK: invoke.Result(exited=ping),
        'ip addr show vmbr0': invoke.Result('    inet 198.51.100.5/26 scope global vmbr0\n'),
        # backups, restore script, staging, greps and copies
        re.compile(r'.*'): invoke.Result(),
    })


def _restored(con):
    return [c[0][0] for c in con.run.call_args_list
            if re.match(r'^cp -p %s/interfaces\.backup\.\d{8}_\d{6} %s$'
                        % (NETWORK_BACKUP_DIR, INTERFACES), c[0][0])]


def test_apply_interfaces(monkeypatch):
    written = {}
    monkeypatch.setattr(host, '_write_to_file',
                        lambda con, path, content, mode='wb': written.update({path: content}))
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)
    content = render_interfaces(HOSTNET)
    con = _apply_context()
    backup = apply_interfaces(con, content, HOSTNET)
    assert backup.startswith(NETWORK_BACKUP_DIR + '/interfaces.backup.')
    assert written[os.path.join(NETWORK_BACKUP_DIR, 'interfaces.staged')] == content
    assert backup in written[RESTORE_SCRIPT]
    assert not _restored(con)


def test_apply_interfaces_restart_failure_restores(monkeypatch):
    import pytest

    monkeypatch.setattr(host, '_write_to_file', lambda con, path, content, mode='wb': None)
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)
    con = _apply_context(restart=1)
    with pytest.raises(Exit):
        apply_interfaces(con, render_interfaces(HOSTNET), HOSTNET)
    assert len(_restored(con)) == 1
    commands = [c[0][0] for c in con.run.call_args_list]
    assert 'ping -c 1 -W 5 %s' % CONNECTIVITY_CHECK not in commands


def test_apply_interfaces_lost_connectivity_restores(monkeypatch):
    import pytest

    monkeypatch.setattr(host, '_write_to_file', lambda con, path, content, mode='wb': None)
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)
    con = _apply_context(ping=1)
    with pytest.raises(Exit):
        apply_interfaces(con, render_interfaces(HOSTNET), HOSTNET)
    assert len(_restored(con)) == 1
    commands = [c[0][0] for c in con.run.call_args_list]
    # restarted once for the change, once for the restore
    assert commands.count('systemctl restart networking') == 2


def test_apply_interfaces_refuses_broken_configuration():
    import pytest

    con = _apply_context()
    with pytest.raises(Exit):
        apply_interfaces(con, render_interfaces(HOSTNET).replace('auto vmbr0\n', ''), HOSTNET)
    assert con.run.call_count == 0
