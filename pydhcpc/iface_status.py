'''Interface state & hardware address, through netlink.'''

import asyncio
from logging import getLogger
from typing import Literal, Optional

from pyroute2.iproute.linux import AsyncIPRoute
from pyroute2.netlink.exceptions import NetlinkError
from pyroute2.netlink.rtnl import RTMGRP_LINK

LOG = getLogger(__name__)

IfaceState = Literal['up', 'down']


class InterfaceNotFound(LookupError):
    '''Raised when an interface is not found.'''


async def _get_link(ipr: AsyncIPRoute, interface: str):
    lookup_results = await ipr.link_lookup(ifname=interface)
    if not lookup_results:
        raise InterfaceNotFound(interface)
    get_results = await ipr.link('get', index=lookup_results[0])
    return get_results[0]


async def get_hardware_address(interface: str) -> str:
    '''The MAC address of an interface, used as the DHCP chaddr.'''
    async with AsyncIPRoute() as ipr:
        link = await _get_link(ipr, interface)
    address = link.get('IFLA_ADDRESS')
    if not address:
        raise InterfaceNotFound(f'{interface} has no hardware address')
    LOG.debug('%s has hardware address %s', interface, address)
    return address


class InterfaceStateWatcher:
    '''Async context manager, fires events when an interface changes state.

    Used by the dhcp client to restart itself in such cases.
    '''

    def __init__(self, interface: str) -> None:
        self.interface = interface
        self.up = asyncio.Event()
        self.down = asyncio.Event()
        self._state: Optional[IfaceState] = None
        self._watcher: Optional[asyncio.Task] = None
        self._ipr: Optional[AsyncIPRoute] = None

    @property
    def ipr(self) -> AsyncIPRoute:
        '''The async iproute context. Only useable in the context manager.'''
        assert self._ipr, 'need to use as a context manager'
        return self._ipr

    @property
    def state(self) -> IfaceState:
        '''The current state of the watched interface.'''
        assert self._state, "not yet started"
        return self._state

    @state.setter
    def state(self, value: IfaceState) -> None:
        '''Set the state & trigger the relevant event.'''
        if value != self._state:
            LOG.debug('%s is %s', self.interface, value)
        self._state = value
        if value == 'up':
            self.up.set()
            self.down.clear()
        elif value == 'down':
            self.down.set()
            self.up.clear()

    async def _fetch_current_state(self) -> IfaceState:
        '''Get the initial state before we're notified of changes.'''
        link = await _get_link(self.ipr, self.interface)
        return link.get('state')

    async def _watch_changes(self) -> None:
        '''Updates `state` in real time forever.'''
        while True:
            async for msg in self.ipr.get():
                if msg.get('IFLA_IFNAME') == self.interface:
                    self.state = msg.get('state')

    async def __aenter__(self) -> 'InterfaceStateWatcher':
        self._ipr = await AsyncIPRoute().__aenter__()
        await self.ipr.bind(RTMGRP_LINK)
        self.state = await self._fetch_current_state()
        self._watcher = asyncio.create_task(self._watch_changes())
        return self

    async def __aexit__(self, *_) -> None:
        self.ipr.close()
        if self._watcher:
            try:
                await self._watcher
            except NetlinkError as exc:
                # 104: we called close() so that is expected
                if exc.code != 104:
                    raise
            self._watcher = None
        self._ipr = None
