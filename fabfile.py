#!/usr/bin/python3

# expose all modules to fabric, also available as the pve-bootstrap
# command once installed
from fabric_pve.installer import ns  # noqa: F401
