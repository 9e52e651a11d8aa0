'''
pydhcpc
=======

An asyncio DHCPv4 client, built around a state machine that does no I/O.

The package layout:

- `dhcp4msg`: the DHCP wire format,
- `machine`: the lease acquisition state machine,
- `client`: runs the state machine on a UDP socket,
- `hooks`: configure the interface when a lease is obtained or lost,
- `cli`: the `pydhcpc` command.

'''

import logging

__version__ = '0.1.0'

logging.getLogger(__name__).addHandler(logging.NullHandler())
