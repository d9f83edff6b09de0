# this file has global configuration for Fabric, as per:
#
# https://docs.fabfile.org/en/2.5/concepts/configuration.html

# provisioning touches the network, disks and packages, so connect to
# the Hetzner box as root
#
# XXX: this doesn't work if the user explicitely made a different
# config in ~/.ssh/config, that's up to the user to fix.
user = 'root'
