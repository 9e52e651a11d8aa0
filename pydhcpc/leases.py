'''Lease class and lease stores used by the dhcp client.'''

import abc
import ipaddress
import json
import time
from dataclasses import asdict, dataclass, field
from logging import getLogger
from pathlib import Path
from typing import Any, Optional

from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums.dhcp import Option
from pydhcpc.exceptions import MissingOptionError

LOG = getLogger(__name__)

# lease_time value meaning the lease never expires
INFINITE_LEASE = 0xFFFFFFFF
# RFC 2131 section 4.4.5
RENEWAL_FACTOR = 0.5
REBINDING_FACTOR = 0.875


def _now() -> float:
    '''The current timestamp.'''
    return time.time()


@dataclass(frozen=True)
class Lease:
    '''Represents a lease obtained through DHCP.

    Leases are never modified: renewing a lease creates a new one.
    Times are in seconds; `lease_time`, `renewal_time` and
    `rebinding_time` are None for infinite leases, and always satisfy
    `renewal_time <= rebinding_time <= lease_time` otherwise.
    '''

    # Name of the interface for which this lease was requested
    interface: str
    # The IP address assigned to the client
    ip: str
    # The IP address of the server which allocated this lease
    server_id: str
    # Lease duration (option 51)
    lease_time: Optional[int]
    # T1 (option 58)
    renewal_time: Optional[float] = None
    # T2 (option 59)
    rebinding_time: Optional[float] = None
    subnet_mask: Optional[str] = None
    routers: list[str] = field(default_factory=list)
    name_servers: list[str] = field(default_factory=list)
    broadcast_address: Optional[str] = None
    domain_name: Optional[str] = None
    mtu: Optional[int] = None
    # Timestamp of when this lease was obtained
    obtained: float = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.lease_time is None:
            object.__setattr__(self, 'renewal_time', None)
            object.__setattr__(self, 'rebinding_time', None)
            return
        t1, t2 = self.renewal_time, self.rebinding_time
        if t2 is None or not 0 <= t2 <= self.lease_time:
            t2 = self.lease_time * REBINDING_FACTOR
        if t1 is None or not 0 <= t1 <= t2:
            t1 = min(self.lease_time * RENEWAL_FACTOR, t2)
        object.__setattr__(self, 'renewal_time', t1)
        object.__setattr__(self, 'rebinding_time', t2)

    @classmethod
    def from_ack(
        cls,
        ack: DHCPMessage,
        interface: str,
        obtained: Optional[float] = None,
        server_id: Optional[str] = None,
    ) -> 'Lease':
        '''Build a lease from the options of an ACK.

        `server_id` is used when the ACK has no server identifier,
        before falling back to `siaddr`.

        Raises `MissingOptionError` if the lease time is not set, and
        `MalformedOptionError` if an option cannot be decoded.
        '''
        lease_time = ack.require(Option.LEASE_TIME)
        server_id = ack.get(Option.SERVER_ID) or server_id or ack.siaddr
        return cls(
            interface=interface,
            ip=ack.yiaddr,
            server_id=server_id,
            lease_time=None if lease_time == INFINITE_LEASE else lease_time,
            renewal_time=ack.get(Option.RENEWAL_TIME),
            rebinding_time=ack.get(Option.REBINDING_TIME),
            subnet_mask=ack.get(Option.SUBNET_MASK),
            routers=ack.get(Option.ROUTER, []),
            name_servers=ack.get(Option.NAME_SERVER, []),
            broadcast_address=ack.get(Option.BROADCAST_ADDRESS),
            domain_name=ack.get(Option.DOMAIN_NAME),
            mtu=ack.get(Option.INTERFACE_MTU),
            obtained=_now() if obtained is None else obtained,
        )

    @property
    def infinite(self) -> bool:
        return self.lease_time is None

    def expired(self, now: Optional[float] = None) -> bool:
        '''Whether this lease has expired (its expiration is in the past).

        When loading a persisted lease, this won't be correct if the clock
        has been adjusted since the lease was written.
        However the worst case scenario is that we ask for the same
        address again and get another one.
        '''
        if self.lease_time is None:
            return False
        now = _now() if now is None else now
        return self.obtained + self.lease_time <= now

    @property
    def prefixlen(self) -> int:
        '''The length of the subnet mask assigned to the client.

        Without a subnet mask, the classful mask of the address is used.
        '''
        if self.subnet_mask:
            mask = ipaddress.IPv4Network(f'0.0.0.0/{self.subnet_mask}')
            return mask.prefixlen
        first_octet = int(self.ip.split('.')[0])
        if first_octet < 128:
            return 8
        if first_octet < 192:
            return 16
        return 24

    @property
    def network(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface(f'{self.ip}/{self.prefixlen}')

    @property
    def default_gateway(self) -> str:
        '''The default gateway for this interface.

        As mentioned by the RFC, the first router is the most prioritary.
        '''
        if not self.routers:
            raise MissingOptionError(Option.ROUTER)
        return self.routers[0]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'Lease':
        return cls(**data)


class LeaseStore(abc.ABC):
    '''Where the client keeps its last lease between runs.'''

    @abc.abstractmethod
    def dump(self, lease: Lease) -> None:
        '''Write a lease, i.e. to disk or to stdout.'''

    @abc.abstractmethod
    def load(self, interface: str) -> Optional[Lease]:
        '''Load an existing lease for an interface, if it exists.

        The lease is not checked for freshness, and will be None if no lease
        could be loaded.
        '''

    def remove(self, interface: str) -> None:
        '''Forget the lease of an interface. Does nothing by default.'''


class NullLeaseStore(LeaseStore):
    '''Keeps nothing.'''

    def dump(self, lease: Lease) -> None:
        pass

    def load(self, interface: str) -> None:
        return None


class JSONStdoutLeaseStore(LeaseStore):
    '''Just prints the lease to stdout when the client gets a new one.'''

    def dump(self, lease: Lease) -> None:
        '''Writes the lease as json to stdout.'''
        print(json.dumps(lease.to_dict(), indent=2), flush=True)

    def load(self, interface: str) -> None:
        '''Does not do anything.'''
        return None


class JSONFileLeaseStore(LeaseStore):
    '''Write and load the lease from a JSON file.

    Lease files are named after the interface, and live in `lease_dir`
    (the working directory by default).
    '''

    def __init__(self, lease_dir: Optional[Path] = None):
        self._lease_dir = lease_dir

    @property
    def lease_dir(self) -> Path:
        return self._lease_dir or Path.cwd()

    def get_path(self, interface: str) -> Path:
        '''The lease file, named after the interface.'''
        return self.lease_dir.joinpath(f'{interface}.lease.json')

    def dump(self, lease: Lease) -> None:
        '''Dump the lease to a file.'''
        lease_path = self.get_path(lease.interface)
        LOG.info('Writing lease for %s to %s', lease.interface, lease_path)
        with lease_path.open('wt') as lf:
            json.dump(lease.to_dict(), lf, indent=2)

    def load(self, interface: str) -> Optional[Lease]:
        '''Load the lease from a file.'''
        lease_path = self.get_path(interface)
        try:
            with lease_path.open('rt') as lf:
                LOG.info('Loading lease for %s from %s', interface, lease_path)
                return Lease.from_dict(json.load(lf))
        except FileNotFoundError:
            LOG.info('No existing lease at %s for %s', lease_path, interface)
            return None
        except (TypeError, ValueError) as err:
            LOG.warning('Error loading lease: %s', err)
            return None

    def remove(self, interface: str) -> None:
        lease_path = self.get_path(interface)
        LOG.debug('Removing %s', lease_path)
        lease_path.unlink(missing_ok=True)
