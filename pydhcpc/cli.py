import asyncio
import logging
import sys
from argparse import (
    ArgumentDefaultsHelpFormatter,
    ArgumentParser,
    ArgumentTypeError,
    Namespace,
)
from importlib import import_module
from typing import Any, Optional, Sequence

from pydhcpc.client import AsyncDHCPClient, ClientConfig
from pydhcpc.exceptions import TransportError
from pydhcpc.fsm import State
from pydhcpc.hooks import Hook
from pydhcpc.iface_status import InterfaceNotFound, InterfaceStateWatcher
from pydhcpc.leases import LeaseStore
from pydhcpc.timers import RetryPolicy

LOG = logging.getLogger(__name__)

DEFAULT_HOOKS = (
    'pydhcpc.hooks.configure_ip',
    'pydhcpc.hooks.add_default_gw',
    'pydhcpc.hooks.remove_default_gw',
    'pydhcpc.hooks.remove_ip',
    'pydhcpc.hooks.configure_dns',
)


def import_dotted_name(name: str) -> Any:
    '''Import anything by name. Return None if the import wasn't successful.'''
    try:
        module_name, obj_name = name.rsplit('.', 1)
        module = import_module(module_name)
        return getattr(module, obj_name)
    except (ValueError, ImportError, AttributeError):
        return None


def positive_float(value: str) -> float:
    try:
        ret = float(value)
    except ValueError:
        raise ArgumentTypeError(f'{value!r} is not a number')
    if ret <= 0:
        raise ArgumentTypeError(f'{value!r} must be > 0')
    return ret


def positive_int(value: str) -> int:
    try:
        ret = int(value)
    except ValueError:
        raise ArgumentTypeError(f'{value!r} is not an integer')
    if ret < 1:
        raise ArgumentTypeError(f'{value!r} must be >= 1')
    return ret


def get_psr() -> ArgumentParser:
    psr = ArgumentParser(
        prog='pydhcpc',
        description='A DHCP client. '
        'Tries to obtain & keep a lease on an interface, running '
        'configurable hooks to assign the obtained IP address and gw to it.',
        epilog='Send a SIGUSR1 to renew the current lease, SIGUSR2 to rebind '
        'it and SIGHUP to reset & get a new lease.',
        formatter_class=ArgumentDefaultsHelpFormatter,
    )
    psr.add_argument(
        'interface', help='The interface to request an address for.'
    )
    psr.add_argument(
        '--lease-store',
        help='Class to use to store leases. '
        'Must be a subclass of `pydhcpc.leases.LeaseStore`.',
        type=str,
        default='pydhcpc.leases.JSONFileLeaseStore',
        metavar='dotted.name',
    )
    psr.add_argument(
        '--hook',
        help='Hooks to load. '
        'These are used to run async python code when, '
        'for example, renewing or expiring a lease. '
        'Defaults to adding & removing ip & gateway, '
        'and writing the name servers to /etc/resolv.conf.',
        action='append',
        type=str,
        metavar='dotted.name',
    )
    psr.add_argument(
        '--disable-hooks',
        help='Disable all hooks.',
        default=False,
        action='store_true',
    )
    psr.add_argument(
        '-x',
        '--exit-on-timeout',
        metavar='N',
        help='Wait for max N seconds for a lease, '
        'exit if none could be obtained.',
        type=positive_float,
    )
    psr.add_argument(
        '--log-level',
        help='Logging level to use.',
        choices=('DEBUG', 'INFO', 'WARNING', 'ERROR'),
        default='INFO',
    )
    psr.add_argument(
        '-q',
        '--quiet',
        default=False,
        action='store_true',
        help='Only log warnings and errors.',
    )
    psr.add_argument(
        '-p',
        '--write-pidfile',
        default=False,
        action='store_true',
        help='Write a pid file in the working directory. ',
    )
    psr.add_argument(
        '-R',
        '--no-release',
        default=False,
        action='store_true',
        help='Do not send a DHCPRELEASE on exit.',
    )
    retry = psr.add_argument_group('retransmission')
    retry.add_argument(
        '--base-timeout',
        type=positive_float,
        default=RetryPolicy.base_timeout,
        metavar='SECONDS',
        help='How long to wait for the first answer.',
    )
    retry.add_argument(
        '--max-timeout',
        type=positive_float,
        default=RetryPolicy.max_timeout,
        metavar='SECONDS',
        help='Maximum wait between two retransmissions.',
    )
    retry.add_argument(
        '--max-attempts',
        type=positive_int,
        default=RetryPolicy.max_attempts,
        metavar='N',
        help='REQUESTs sent for an offer before starting over.',
    )
    options = psr.add_argument_group('dhcp options')
    options.add_argument(
        '--client-id',
        type=str,
        metavar='ID',
        help='Client id sent to servers. Defaults to the interface MAC.',
    )
    options.add_argument(
        '--vendor-id', type=str, default='pydhcpc', help='Vendor class id.'
    )
    options.add_argument(
        '--host-name',
        type=str,
        help='Host name sent to servers. Defaults to the system host name.',
    )
    return psr


def get_retry_policy(args: Namespace) -> RetryPolicy:
    '''The retransmission policy from command line arguments.

    The jitter is reduced for small timeouts so they stay positive.
    '''
    return RetryPolicy(
        base_timeout=args.base_timeout,
        max_timeout=max(args.max_timeout, args.base_timeout),
        max_attempts=args.max_attempts,
        jitter=min(RetryPolicy.jitter, args.base_timeout / 4),
    )


def get_hooks(psr: ArgumentParser, args: Namespace) -> list[Hook]:
    hooks: list[Hook] = []
    if args.disable_hooks:
        return hooks
    LOG.debug('Configured hooks:')
    for dotted_hook_name in args.hook or DEFAULT_HOOKS:
        hook = import_dotted_name(dotted_hook_name)
        if not isinstance(hook, Hook):
            psr.error(f'{dotted_hook_name!r} must point to a valid hook.')
        hooks.append(hook)
        LOG.debug("- %s", hook.name)
    return hooks


def get_config(psr: ArgumentParser, args: Namespace) -> ClientConfig:
    '''Create the client configuration from command line arguments.'''
    store_type = import_dotted_name(args.lease_store)
    if not (
        isinstance(store_type, type) and issubclass(store_type, LeaseStore)
    ):
        psr.error(f'{args.lease_store!r} must point to a LeaseStore subclass.')

    cfg = ClientConfig(
        interface=args.interface,
        lease_store=store_type(),
        hooks=get_hooks(psr, args),
        retry=get_retry_policy(args),
        write_pidfile=args.write_pidfile,
        release=not args.no_release,
        handle_signals=True,
        client_id=args.client_id.encode() if args.client_id else None,
        vendor_id=args.vendor_id,
    )
    if args.host_name:
        cfg.host_name = args.host_name
    return cfg


async def run_client(
    cfg: ClientConfig, exit_timeout: Optional[float] = None
) -> None:
    '''Run the client until interrupted, a timeout, or a socket error.

    The optional `exit_timeout` controls 2 things when provided:
    - How long to wait for the interface to be up
    - How long to wait for the client to be bound when starting up
    '''

    acli = AsyncDHCPClient(cfg)

    async with InterfaceStateWatcher(cfg.interface) as iface_watcher:
        while True:
            if iface_watcher.state != 'up':
                LOG.info('Waiting for %s to go up...', cfg.interface)
            await asyncio.wait_for(
                iface_watcher.up.wait(), timeout=exit_timeout
            )
            # Open the socket, read existing lease, etc
            async with acli:
                await acli.bootstrap()
                if exit_timeout:
                    # Wait a bit for a lease, and raise if we have none
                    await acli.wait_for_state(
                        State.BOUND, timeout=exit_timeout
                    )
                went_down = asyncio.create_task(iface_watcher.down.wait())
                stopped = asyncio.create_task(acli.wait())
                done, pending = await asyncio.wait(
                    (went_down, stopped), return_when=asyncio.FIRST_COMPLETED
                )
                for task in pending:
                    task.cancel()
                if stopped in done:
                    # raises the error that stopped the client
                    stopped.result()
                LOG.warning('%s went down', cfg.interface)


def setup_logging(args: Namespace) -> None:
    logging.basicConfig(
        format='%(asctime)s %(levelname)s [%(name)s:%(funcName)s] %(message)s'
    )
    level = 'WARNING' if args.quiet else args.log_level
    logging.getLogger('pydhcpc').setLevel(level)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    psr = get_psr()
    args = psr.parse_args(argv)
    setup_logging(args)
    cfg = get_config(psr, args)

    try:
        await run_client(cfg, exit_timeout=args.exit_on_timeout)
    except InterfaceNotFound as err:
        psr.error(f"Interface not found: {err}")
    except asyncio.TimeoutError as err:
        LOG.error('%s', str(err) or 'Timed out')
        return 1
    except TransportError as err:
        LOG.error('%s', err)
        return 1
    return 0


def run():
    # for the setup.py entrypoint
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':  # pragma: no cover
    run()
