from pydhcpc.enums import bootp, dhcp

__all__ = ('bootp', 'dhcp')
