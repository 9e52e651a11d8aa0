"""Helper functions to build dhcp client messages."""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums import bootp
from pydhcpc.enums.dhcp import MessageType, Option
from pydhcpc.fsm import State
from pydhcpc.leases import Lease

BROADCAST_ADDR = '255.255.255.255'
CLIENT_PORT = 68
SERVER_PORT = 67

DEFAULT_PARAMETERS = (
    Option.SUBNET_MASK,
    Option.ROUTER,
    Option.NAME_SERVER,
    Option.DOMAIN_NAME,
    Option.BROADCAST_ADDRESS,
    Option.INTERFACE_MTU,
    Option.LEASE_TIME,
    Option.RENEWAL_TIME,
    Option.REBINDING_TIME,
)


@dataclass(frozen=True)
class Identity:
    '''What the client tells servers about itself in every message.'''

    # MAC address of the interface, sent as chaddr
    chaddr: str
    # The DHCP parameters requested by the client.
    parameter_list: tuple[Option, ...] = DEFAULT_PARAMETERS
    # Custom client id. The mac is used as the client id if not provided.
    client_id: Optional[bytes] = None
    # optional vendor_id & hostname options included in requests
    host_name: Optional[str] = None
    vendor_id: Optional[str] = None

    def options(self) -> dict[int, Any]:
        '''Client id, host name & vendor id options.'''
        # A hardware type of 0 (zero) should be used when the value field
        # contains an identifier other than a hardware address
        if self.client_id:
            client_id = {'type': 0, 'key': self.client_id}
        else:
            client_id = {
                'type': bootp.HardwareType.ETHERNET,
                'key': self.chaddr,
            }
        return {
            Option.CLIENT_ID: client_id,
            Option.HOST_NAME: self.host_name,
            Option.VENDOR_ID: self.vendor_id,
        }


@dataclass(frozen=True)
class SentDHCPMessage:
    '''A DHCP message to be sent to a server or broadcast.

    `ip_dst` is None for broadcast messages.
    '''

    dhcp: DHCPMessage
    ip_dst: Optional[str] = None
    dport: int = SERVER_PORT

    @property
    def broadcast(self) -> bool:
        return self.ip_dst is None

    @property
    def message_type(self) -> Optional[MessageType]:
        '''The DHCP message type (DISCOVER, REQUEST, ACK...)'''
        return self.dhcp.message_type

    @property
    def xid(self) -> int:
        return self.dhcp.xid

    def __str__(self) -> str:
        return f'{self.dhcp} to {self.ip_dst or BROADCAST_ADDR}:{self.dport}'


@dataclass(frozen=True)
class ReceivedDHCPMessage:
    '''A DHCP message received by the client.'''

    dhcp: DHCPMessage
    ip_src: str = '0.0.0.0'
    sport: int = SERVER_PORT
    received: float = field(default=0.0, compare=False)

    @property
    def message_type(self) -> Optional[MessageType]:
        return self.dhcp.message_type

    @property
    def xid(self) -> int:
        return self.dhcp.xid

    def __str__(self) -> str:
        return f'{self.dhcp} from {self.ip_src}:{self.sport}'


def _request_base(identity: Identity, xid: int, secs: int) -> dict[str, Any]:
    return {
        'op': bootp.MessageType.BOOTREQUEST,
        'xid': xid,
        'secs': min(max(int(secs), 0), 0xFFFF),
        'chaddr': identity.chaddr,
    }


def discover(
    identity: Identity,
    xid: int,
    secs: int = 0,
    requested_ip: Optional[str] = None,
) -> SentDHCPMessage:
    '''Make a broadcast DISCOVER message for the given parameters.

    `requested_ip` can be set to ask for the address of a previous lease.
    '''
    return SentDHCPMessage(
        dhcp=DHCPMessage.build(
            flags=bootp.Flag.BROADCAST,
            options={
                Option.MESSAGE_TYPE: MessageType.DISCOVER,
                Option.REQUESTED_IP: requested_ip,
                Option.PARAMETER_LIST: list(identity.parameter_list),
                **identity.options(),
            },
            **_request_base(identity, xid, secs),
        )
    )


def request_for_offer(
    identity: Identity, xid: int, offer: DHCPMessage, secs: int = 0
) -> SentDHCPMessage:
    '''Make a REQUEST message for a given OFFER.

    Since we don't have an IP yet, the message is always broadcast.
    When requesting an offer in the Selecting state, the server_id DHCP option
    is always set as opposed to when a REQUEST is sent in other states.

    See RFC 2131 section 4.3.2.
    '''
    return SentDHCPMessage(
        dhcp=DHCPMessage.build(
            flags=bootp.Flag.BROADCAST,
            options={
                Option.MESSAGE_TYPE: MessageType.REQUEST,
                Option.REQUESTED_IP: offer.yiaddr,
                Option.SERVER_ID: offer.require(Option.SERVER_ID),
                Option.PARAMETER_LIST: list(identity.parameter_list),
                **identity.options(),
            },
            **_request_base(identity, xid, secs),
        )
    )


def request_for_lease(
    identity: Identity,
    xid: int,
    lease: Lease,
    state: Literal[State.RENEWING, State.REBINDING],
    secs: int = 0,
) -> SentDHCPMessage:
    '''Make a REQUEST for an existing lease.

    This differs from REQUESTs in response to an OFFER in that neither the
    server_id nor the requested_ip options are set; the bootp client IP
    (ciaddr) is set to the lease's IP instead.

    When renewing, (i.e. T1 expires) the message is for the server that granted
    the lease. The lease's IP is expected to be assigned to the client's
    interface at this point.

    When rebinding (T2), the message is broadcast on the network.

    See RFC 2131 section 4.3.6.
    '''
    dhcp_msg = DHCPMessage.build(
        flags=bootp.Flag.UNICAST,
        ciaddr=lease.ip,
        options={
            Option.MESSAGE_TYPE: MessageType.REQUEST,
            Option.PARAMETER_LIST: list(identity.parameter_list),
            **identity.options(),
        },
        **_request_base(identity, xid, secs),
    )
    if state == State.RENEWING:
        # T1 timer expired, send a request directly to the known server
        return SentDHCPMessage(dhcp=dhcp_msg, ip_dst=lease.server_id)
    return SentDHCPMessage(dhcp=dhcp_msg)


def release(identity: Identity, xid: int, lease: Lease) -> SentDHCPMessage:
    '''Make a RELEASE for an existing & active lease.'''
    # RELEASE messages have nearly no allowed options,
    # and the released IP address must be set in ciaddr
    options = identity.options()
    return SentDHCPMessage(
        dhcp=DHCPMessage.build(
            flags=bootp.Flag.UNICAST,
            ciaddr=lease.ip,
            options={
                Option.MESSAGE_TYPE: MessageType.RELEASE,
                Option.SERVER_ID: lease.server_id,
                Option.CLIENT_ID: options[Option.CLIENT_ID],
            },
            **_request_base(identity, xid, 0),
        ),
        # RELEASEs are unicast (see rfc section 4.4.4)
        ip_dst=lease.server_id,
    )
