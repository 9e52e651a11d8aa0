'''Fake DHCP server answers, built from the client's requests.'''

from typing import Any, Callable, Optional, Union

from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums import bootp, dhcp

# addresses used by the fake servers
SERVER_ID = '192.168.186.1'
OFFERED_IP = '192.168.186.73'
CLIENT_MAC = '72:c1:55:6f:76:83'

# Builds the server answer to a client request, None means no answer
Response = Callable[[DHCPMessage], Union[DHCPMessage, bytes, None]]


def reply(
    request: DHCPMessage,
    msg_type: dhcp.MessageType,
    yiaddr: str = OFFERED_IP,
    server_id: Optional[str] = SERVER_ID,
    lease_time: Optional[int] = 120,
    renewal_time: Optional[int] = None,
    rebinding_time: Optional[int] = None,
    **options: Any,
) -> DHCPMessage:
    '''Build a server reply to `request`, with the same xid & chaddr.'''
    base_options: dict[int, Any] = {
        dhcp.Option.MESSAGE_TYPE: msg_type,
        dhcp.Option.SERVER_ID: server_id,
    }
    if msg_type != dhcp.MessageType.NAK:
        base_options.update(
            {
                dhcp.Option.LEASE_TIME: lease_time,
                dhcp.Option.RENEWAL_TIME: renewal_time,
                dhcp.Option.REBINDING_TIME: rebinding_time,
                dhcp.Option.SUBNET_MASK: '255.255.255.0',
                dhcp.Option.ROUTER: [SERVER_ID],
                dhcp.Option.NAME_SERVER: [SERVER_ID],
                dhcp.Option.BROADCAST_ADDRESS: '192.168.186.255',
            }
        )
    else:
        yiaddr = '0.0.0.0'
    base_options.update(
        {getattr(dhcp.Option, k.upper()): v for k, v in options.items()}
    )
    return DHCPMessage.build(
        op=bootp.MessageType.BOOTREPLY,
        xid=request.xid,
        flags=request.flags,
        chaddr=request.chaddr,
        yiaddr=yiaddr,
        siaddr=server_id or '0.0.0.0',
        options=base_options,
    )


def offer(**kwargs: Any) -> Response:
    '''Answer the request with an OFFER.'''
    return lambda request: reply(request, dhcp.MessageType.OFFER, **kwargs)


def ack(**kwargs: Any) -> Response:
    '''Answer the request with an ACK.'''
    return lambda request: reply(request, dhcp.MessageType.ACK, **kwargs)


def nak(**kwargs: Any) -> Response:
    '''Answer the request with a NAK.'''
    return lambda request: reply(request, dhcp.MessageType.NAK, **kwargs)


def nothing() -> Response:
    '''Do not answer the request.'''
    return lambda request: None
