'''
UDP transport
=============

The client talks to servers through a plain UDP socket bound to port 68.
Messages to servers without a known address are broadcast, RENEWING
requests and RELEASEs are unicast to the server that granted the lease.

The transport knows nothing about DHCP: it sends and receives bytes.

'''

import asyncio
import socket
import time
from logging import getLogger
from typing import NamedTuple, Optional

from pydhcpc.exceptions import TransportError
from pydhcpc.messages import BROADCAST_ADDR, CLIENT_PORT, SERVER_PORT

LOG = getLogger(__name__)

# Large enough for any DHCP message, including jumbo frames
RECV_BUFSIZE = 4096


class Datagram(NamedTuple):
    '''Received bytes and the (address, port) they came from.'''

    data: bytes
    source: tuple[str, int]


class UDPTransport:
    '''
    Parameters:

    * interface -- interface name to bind to
    * port -- UDP port to listen on
    * server_port -- UDP port messages are sent to

    Implements the async context manager protocol, so can be used in
    `async with` statements::

        async with UDPTransport('eth0') as transport:
            await transport.send_broadcast(discover.encode())
            datagram = await transport.receive(deadline=time.time() + 4)

    '''

    def __init__(
        self,
        interface: str,
        port: int = CLIENT_PORT,
        server_port: int = SERVER_PORT,
    ) -> None:
        self.interface = interface
        self.port = port
        self.server_port = server_port
        self._sock: Optional[socket.socket] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        # We define this as a property because it's easier to patch in tests
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def sock(self) -> socket.socket:
        '''The underlying socket. Only useable once opened.'''
        if self._sock is None:
            raise TransportError(f'Transport on {self.interface} is closed')
        return self._sock

    @property
    def closed(self) -> bool:
        return self._sock is None

    def _bind_to_device(self, sock: socket.socket) -> None:
        '''Only receive messages from our interface, when supported.'''
        if not hasattr(socket, 'SO_BINDTODEVICE'):
            LOG.debug('SO_BINDTODEVICE is not available on this platform')
            return
        sock.setsockopt(
            socket.SOL_SOCKET,
            socket.SO_BINDTODEVICE,
            self.interface.encode(),
        )

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            self._bind_to_device(sock)
            sock.setblocking(False)
            sock.bind(('0.0.0.0', self.port))
        except OSError:
            sock.close()
            raise
        return sock

    def open(self) -> 'UDPTransport':
        '''Create the socket and bind it to the client port.'''
        if self._sock is not None:
            return self
        try:
            self._sock = self._create_socket()
        except OSError as err:
            raise TransportError(
                f'Cannot listen on {self.interface}:{self.port}: {err}'
            ) from err
        LOG.debug('Listening on %s port %d', self.interface, self.port)
        return self

    def close(self) -> None:
        '''Release the socket. Can be called several times.'''
        if self._sock is not None:
            LOG.debug('Closing socket on %s', self.interface)
            self._sock.close()
            self._sock = None

    async def _sendto(self, data: bytes, address: str) -> None:
        sock = self.sock
        try:
            await self.loop.sock_sendto(
                sock, data, (address, self.server_port)
            )
        except OSError as err:
            raise TransportError(
                f'Cannot send to {address}:{self.server_port}: {err}'
            ) from err

    async def send_broadcast(self, data: bytes) -> None:
        '''Send bytes to all servers on the link.'''
        await self._sendto(data, BROADCAST_ADDR)

    async def send_unicast(self, address: str, data: bytes) -> None:
        '''Send bytes to a single server.'''
        await self._sendto(data, address)

    async def receive(self, deadline: Optional[float]) -> Optional[Datagram]:
        '''Wait for the next datagram, until `deadline` at most.

        `deadline` is an absolute `time.time()` timestamp, None to wait
        forever. Returns None if nothing was received in time.

        Cancelling the awaiting task interrupts the wait.
        '''
        timeout: Optional[float] = None
        if deadline is not None:
            timeout = max(deadline - time.time(), 0.0)
        sock = self.sock
        try:
            data, source = await asyncio.wait_for(
                self.loop.sock_recvfrom(sock, RECV_BUFSIZE),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return None
        except OSError as err:
            raise TransportError(
                f'Cannot receive on {self.interface}: {err}'
            ) from err
        return Datagram(data=data, source=source)

    async def __aenter__(self) -> 'UDPTransport':
        return self.open()

    async def __aexit__(self, *_) -> None:
        self.close()
