'''Hooks called by the DHCP client when bound, a leases expires, etc.'''

import asyncio
import errno
import ipaddress
from logging import getLogger
from pathlib import Path
from typing import Callable, Iterable, NamedTuple, Optional, Protocol

from pyroute2.iproute.linux import AsyncIPRoute
from pyroute2.netlink.exceptions import NetlinkError

from pydhcpc.exceptions import MissingOptionError
from pydhcpc.fsm import Trigger
from pydhcpc.leases import Lease

LOG = getLogger(__name__)

# Where configure_dns writes name servers
RESOLV_CONF = Path('/etc/resolv.conf')
# Used instead of loopback name servers
FALLBACK_NAME_SERVER = '208.67.222.222'

__all__ = (
    'ConfigurationApplier',
    'FALLBACK_NAME_SERVER',
    'Hook',
    'HookApplier',
    'RESOLV_CONF',
    'Trigger',
    'add_default_gw',
    'configure_dns',
    'configure_ip',
    'hook',
    'remove_default_gw',
    'remove_ip',
    'run_hooks',
)


class ConfigurationApplier(Protocol):
    '''Applies leases decided by the client to the system.

    `apply` is called every time the client enters the BOUND state,
    `revoke` when a lease is lost (released, expired, refused).
    '''

    async def apply(self, lease: Lease, trigger: Trigger) -> None:
        pass  # pragma: no cover

    async def revoke(self, lease: Lease, trigger: Trigger) -> None:
        pass  # pragma: no cover


class HookFunc(Protocol):
    '''Signature for functions that can be passed to the hook decorator.'''

    __name__: str

    async def __call__(self, lease: Lease) -> None:
        pass  # pragma: no cover


class Hook(NamedTuple):
    '''Stores a hook function and its triggers.

    Returned by the `hook()` decorator; no need to subclass or instantiate.
    '''

    func: HookFunc
    triggers: set[Trigger]

    async def __call__(self, lease: Lease) -> None:
        '''Call the hook function.'''
        await self.func(lease=lease)

    @property
    def name(self) -> str:
        '''Shortcut for the function name.'''
        return self.func.__name__


async def run_hooks(
    hooks: Iterable[Hook],
    lease: Lease,
    trigger: Trigger,
    timeout: Optional[float] = None,
):
    '''Called by the client to run the hooks registered for the given trigger.

    The optional `timeout` arguments causes individual hooks to timeout
    if they exceed it.

    Exceptions are handled and printed, but don't prevent the other hooks from
    running.

    .. warning::
        The timeout is async, which means that hooks that block on non-async
        code can ignore it and freeze the whole DHCP client !

    '''
    if hooks := list(hooks):
        LOG.debug('Running %s hooks', trigger)
        for i in filter(lambda y: trigger in y.triggers, hooks):
            try:
                await asyncio.wait_for(i(lease), timeout=timeout)
            except asyncio.TimeoutError:
                LOG.error('Hook %r timed out', i.name)
            except Exception as exc:
                LOG.error('Hook %s failed: %r', i.name, exc)


def hook(*triggers: Trigger) -> Callable[[HookFunc], Hook]:
    '''Decorator for dhcp client hooks.

    A hook is an async function that takes a lease.
    Hooks passed to a `HookApplier` will be called in order by the client
    when one of the triggers passed to the decorator happens.

    For example::

        @hook(Trigger.RENEWED)
        async def lease_was_renewed(lease: Lease):
            print(lease.server_id, 'renewed our lease !')

    .. warning::
        - blocking non-async code in hooks might freeze the client
        - long-running async hooks might be canceled after a timeout

    The decorator returns a `Hook` instance, a utility class storing the hook
    function and its triggers.
    '''

    def decorator(hook_func: HookFunc) -> Hook:
        return Hook(func=hook_func, triggers=set(triggers))

    return decorator


class HookApplier:
    '''Configuration applier running hooks for each trigger.'''

    def __init__(
        self, hooks: Iterable[Hook] = (), timeout: Optional[float] = 2.0
    ) -> None:
        self.hooks = list(hooks)
        self.timeout = timeout

    async def apply(self, lease: Lease, trigger: Trigger) -> None:
        await run_hooks(self.hooks, lease, trigger, timeout=self.timeout)

    async def revoke(self, lease: Lease, trigger: Trigger) -> None:
        await run_hooks(self.hooks, lease, trigger, timeout=self.timeout)


@hook(Trigger.BOUND)
async def configure_ip(lease: Lease):
    '''Add the IP allocated in the lease to its interface.

    Use the `remove_ip` hook in addition to this one for cleanup.
    Without a subnet mask, the classful mask of the address is used.
    '''
    LOG.info('Adding %s/%s to %s', lease.ip, lease.prefixlen, lease.interface)
    async with AsyncIPRoute(ext_ack=True, strict_check=True) as ipr:
        await ipr.addr(
            'replace',
            index=await ipr.link_lookup(ifname=lease.interface),
            address=lease.ip,
            prefixlen=lease.prefixlen,
            broadcast=lease.broadcast_address,
        )


@hook(Trigger.UNBOUND, Trigger.EXPIRED, Trigger.NAK)
async def remove_ip(lease: Lease):
    '''Remove the IP in the lease from its interface.'''
    LOG.info(
        'Removing %s/%s from %s', lease.ip, lease.prefixlen, lease.interface
    )
    async with AsyncIPRoute(ext_ack=True, strict_check=True) as ipr:
        await ipr.addr(
            'del',
            index=await ipr.link_lookup(ifname=lease.interface),
            address=lease.ip,
            prefixlen=lease.prefixlen,
        )


@hook(Trigger.BOUND)
async def add_default_gw(lease: Lease):
    '''Configures the default gateway set in the lease.

    Use in addition to `remove_default_gw` for cleanup.
    '''
    try:
        gateway = lease.default_gateway
    except MissingOptionError:
        LOG.info('No router in the lease, not adding a default route')
        return
    LOG.info(
        'Adding %s as default route through %s', gateway, lease.interface
    )
    async with AsyncIPRoute(ext_ack=True, strict_check=True) as ipr:
        ifindex = await ipr.link_lookup(ifname=lease.interface)
        await ipr.route(
            'replace', dst='0.0.0.0/0', gateway=gateway, oif=ifindex
        )


@hook(Trigger.UNBOUND, Trigger.EXPIRED, Trigger.NAK)
async def remove_default_gw(lease: Lease):
    '''Removes the default gateway set in the lease.'''
    try:
        gateway = lease.default_gateway
    except MissingOptionError:
        return
    LOG.info('Removing %s as default route', gateway)
    async with AsyncIPRoute(ext_ack=True, strict_check=True) as ipr:
        ifindex = await ipr.link_lookup(ifname=lease.interface)
        try:
            await ipr.route(
                'del', dst='0.0.0.0/0', gateway=gateway, oif=ifindex
            )
        except NetlinkError as err:
            if err.code == errno.ESRCH:
                LOG.info(
                    'Default route was already removed by another process'
                )
            else:
                LOG.error('Got a netlink error: %s', err)


def _usable_name_servers(lease: Lease) -> list[str]:
    '''The lease's name servers, loopback ones replaced by the fallback.'''
    servers = []
    for server in lease.name_servers:
        if ipaddress.IPv4Address(server).is_loopback:
            LOG.warning(
                'Loopback name server %s in lease, using %s instead',
                server,
                FALLBACK_NAME_SERVER,
            )
            server = FALLBACK_NAME_SERVER
        if server not in servers:
            servers.append(server)
    return servers


@hook(Trigger.BOUND, Trigger.RENEWED, Trigger.REBOUND)
async def configure_dns(lease: Lease):
    '''Write the name servers & domain of the lease to resolv.conf.

    The file is rewritten on each renewal, in case servers changed.
    '''
    servers = _usable_name_servers(lease)
    if not servers:
        LOG.info('No name servers in the lease, not touching %s', RESOLV_CONF)
        return
    lines = [f'# Generated by pydhcpc for {lease.interface}']
    if lease.domain_name:
        lines.append(f'search {lease.domain_name}')
    lines.extend(f'nameserver {server}' for server in servers)
    LOG.info('Writing %s', RESOLV_CONF)
    RESOLV_CONF.write_text('\n'.join(lines) + '\n')
