#!/usr/bin/python3
# coding: utf-8

'''the pve-bootstrap command'''
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

from invoke import Collection

from . import VerboseProgram, __version__
from . import caddy, drives, host, network, proxmox, storage, vm

# suggested order: proxmox.setup, vm.check-macs, storage.setup,
# network.configure, caddy.setup, vm.pfsense, vm.firewall-admin
ns = Collection(
    caddy,
    drives,
    host,
    network,
    proxmox,
    storage,
    vm,
)


def main():
    program = VerboseProgram(name='pve-bootstrap', version=__version__, namespace=ns)
    program.run()


def test_collection():
    assert sorted(ns.collections) == ['caddy', 'drives', 'host', 'network',
                                      'proxmox', 'storage', 'vm']
    assert 'configure' in ns.collections['network'].tasks
    assert 'firewall-admin' in ns.collections['vm'].task_names
