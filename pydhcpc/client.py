import asyncio
import os
import random
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum, auto
from logging import getLogger
from pathlib import Path
from signal import Signals
from socket import gethostname
from time import time
from typing import DefaultDict, Iterable, Optional

from pydhcpc import messages
from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums import dhcp
from pydhcpc.exceptions import DecodeError, TransportError
from pydhcpc.fsm import State
from pydhcpc.hooks import ConfigurationApplier, Hook, HookApplier
from pydhcpc.iface_status import get_hardware_address
from pydhcpc.leases import JSONFileLeaseStore, Lease, LeaseStore
from pydhcpc.machine import (
    Action,
    Apply,
    LeaseStateMachine,
    MachineConfig,
    Revoke,
    Send,
)
from pydhcpc.timers import RetryPolicy
from pydhcpc.transport import Datagram, UDPTransport

LOG = getLogger(__name__)


class Command(StrEnum):
    '''Requests made to the client loop from outside of it.'''

    START = auto()
    RENEW = auto()
    REBIND = auto()
    RESET = auto()
    RELEASE = auto()


@dataclass
class ClientConfig:
    '''Stores configuration option for the DHCP client.'''

    # The interface to bind to and obtain a lease for.
    interface: str
    # Where to keep the lease between runs.
    lease_store: LeaseStore = field(default_factory=JSONFileLeaseStore)
    # A list of hooks that will be called when the required triggers are met.
    hooks: Iterable[Hook] = ()
    # Replaces the hooks when set.
    applier: Optional[ConfigurationApplier] = None
    # The DHCP parameters requested by the client.
    requested_parameters: Iterable[dhcp.Option] = messages.DEFAULT_PARAMETERS
    # Retransmission timeouts & attempts.
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Whether to write a pidfile in the working directory
    write_pidfile: bool = False
    # Send a DHCPRELEASE on client exit
    release: bool = True
    # Maximum execution duration for a single hook
    hook_timeout: Optional[float] = 2.0
    # Custom client id. The mac is used as the client id if not provided.
    client_id: Optional[bytes] = None
    # Whether to handle USR1 (renew), USR2 (rebind) and HUP (reset)
    handle_signals: bool = True
    # optional vendor_id & hostname options included in requests
    vendor_id: Optional[str] = 'pydhcpc'
    host_name: Optional[str] = field(default_factory=gethostname)
    # The interface MAC address is looked up when not set.
    chaddr: Optional[str] = None

    @property
    def pidfile_path(self) -> Path:
        '''Where to write the pid file. It's named after the interface.'''
        return (
            Path.cwd()
            .joinpath(self.interface)
            .with_name(f"{self.interface}.pid")
        )

    def get_applier(self) -> ConfigurationApplier:
        if self.applier is not None:
            return self.applier
        return HookApplier(hooks=self.hooks, timeout=self.hook_timeout)

    def get_identity(self, chaddr: str) -> messages.Identity:
        return messages.Identity(
            chaddr=chaddr,
            parameter_list=tuple(self.requested_parameters),
            client_id=self.client_id,
            host_name=self.host_name,
            vendor_id=self.vendor_id,
        )


class AsyncDHCPClient:
    '''A DHCP client for one interface.

    Implemented as an async context manager running a `LeaseStateMachine`
    in a single task, which waits for received messages, timeouts and
    commands (renew, rebind...) in turn.

    The client will try to acquire and keep a lease as long as it's running.
    Leases are applied to the system by the configured applier; by default,
    hooks are run when the specified events are triggered (see the
    `hook()` decorator.)

    Exiting the context manager causes the lease to be released and relevant
    hooks to be run.

    Example usage::

        from pydhcpc.client import AsyncDHCPClient, ClientConfig
        from pydhcpc.fsm import State

        cfg = ClientConfig(interface='eth3')
        async with AsyncDHCPClient(cfg) as client:
            # Bootstrap the client by sending a DISCOVER
            await client.bootstrap()
            # Wait 20s until the client gets a lease
            await client.wait_for_state(State.BOUND, timeout=20.0)

    '''

    def __init__(
        self, config: ClientConfig, rng: Optional[random.Random] = None
    ) -> None:
        self.config = config
        self.transport = UDPTransport(self.config.interface)
        self.applier = self.config.get_applier()
        self._rng = rng
        self._machine: Optional[LeaseStateMachine] = None
        # commands put in this queue are run by the client loop
        self._commands: asyncio.Queue[Command] = asyncio.Queue()
        # Handle to run _run_forever for the context manager's lifetime
        self._runner: Optional[asyncio.Task] = None
        # Allows to easily track the state when running the client from python
        self._states: DefaultDict[State, asyncio.Event] = DefaultDict(
            asyncio.Event
        )
        self._state: Optional[State] = None

    # 'public api'

    @property
    def machine(self) -> LeaseStateMachine:
        '''The state machine. Only available in the context manager.'''
        if self._machine is None:
            raise AttributeError('the client is not running')
        return self._machine

    @property
    def state(self) -> Optional[State]:
        '''The current client state, None when not running.'''
        return self._state

    @property
    def lease(self) -> Optional[Lease]:
        '''The current lease, if we have one.'''
        return self._machine.lease if self._machine else None

    async def wait_for_state(
        self, state: State, timeout: Optional[float] = None
    ) -> None:
        '''Waits until the client is in the target state.

        Raises `TransportError` if the client loop failed in the meantime.
        '''
        waiter = asyncio.create_task(self._states[state].wait())
        waited: set[asyncio.Task] = {waiter}
        if self._runner:
            waited.add(self._runner)
        done, _ = await asyncio.wait(
            waited, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter in done:
            return
        waiter.cancel()
        if self._runner in done and not self._runner.cancelled():
            # raises the error that stopped the loop, if any
            self._runner.result()
        raise asyncio.TimeoutError(
            f'Timed out waiting for the {state.name} state. '
            f'Current state: {self.state.name if self.state else None}'
        )

    async def bootstrap(self) -> None:
        '''Send a `DISCOVER`.

        Use this to get a lease when running the client from Python code.
        '''
        await self._commands.put(Command.START)

    async def renew(self) -> None:
        '''Renew the current lease right away.'''
        await self._commands.put(Command.RENEW)

    async def rebind(self) -> None:
        '''Rebind the current lease right away.'''
        await self._commands.put(Command.REBIND)

    async def reset(self) -> None:
        '''Drop the current lease, if any, and look for a new one.'''
        await self._commands.put(Command.RESET)

    async def release(self) -> None:
        '''Release the current lease; the client then stays idle.'''
        await self._commands.put(Command.RELEASE)

    async def wait(self) -> None:
        '''Wait until the client loop stops.

        The loop only stops by raising `TransportError` if the socket
        fails; cancelling this does not stop the loop.
        '''
        if self._runner is None:
            raise AttributeError('the client is not running')
        await asyncio.shield(self._runner)

    async def run(self) -> None:
        '''Get and keep a lease until cancelled.'''
        async with self:
            await self.bootstrap()
            await self.wait()

    # Async context manager methods

    async def __aenter__(self) -> 'AsyncDHCPClient':
        '''Set up the client so it's ready to obtain an IP.

        Tries to load a lease for the client's interface,
        opens the socket and starts the client loop.
        '''
        chaddr = self.config.chaddr or await get_hardware_address(
            self.config.interface
        )
        self._machine = LeaseStateMachine(
            config=MachineConfig(
                interface=self.config.interface,
                identity=self.config.get_identity(chaddr),
                retry=self.config.retry,
            ),
            previous_lease=self._load_lease(),
            rng=self._rng,
        )
        self._update_state()
        self.transport.open()
        try:
            if self.config.handle_signals:
                self._register_signal_handlers()
            if self.config.write_pidfile:
                self.config.pidfile_path.write_text(str(os.getpid()))
                LOG.debug('Wrote pidfile to %s', self.config.pidfile_path)
        except BaseException:
            if self.config.handle_signals:
                self._remove_signal_handlers()
            self.transport.close()
            raise
        self._runner = asyncio.create_task(
            self._run_forever(),
            name=f'DHCP client on {self.config.interface}',
        )
        return self

    async def __aexit__(self, *_) -> None:
        '''Shut down the client.

        If there's an active lease, send a RELEASE for it first.
        '''
        if self.config.handle_signals:
            self._remove_signal_handlers()
        failed = False
        if self._runner:
            self._runner.cancel()
            with suppress(asyncio.CancelledError):
                try:
                    await self._runner
                except TransportError as err:
                    LOG.error('Client loop stopped: %s', err)
                    failed = True
            self._runner = None
        if self._machine and self._machine.lease and self.config.release:
            if failed:
                LOG.warning('Not releasing the lease, the socket failed')
            else:
                try:
                    await self._perform(self._machine.release(time()))
                except TransportError as err:
                    LOG.error('Could not release the lease: %s', err)
        self.transport.close()
        self._state = None
        self._states.clear()
        if self.config.write_pidfile:
            self.config.pidfile_path.unlink(missing_ok=True)
            LOG.debug('Removed pidfile at %s', self.config.pidfile_path)

    # internal methods

    def _load_lease(self) -> Optional[Lease]:
        '''The lease of a previous run, its address is asked for again.'''
        try:
            lease = self.config.lease_store.load(self.config.interface)
        except Exception as exc:
            # whatever error might happen when loading a lease,
            # it should never make the client crash
            LOG.error('Could not load lease: %r', exc)
            return None
        if lease and lease.expired():
            LOG.info('Previous lease for %s has expired', lease.ip)
        return lease

    def _update_state(self) -> None:
        '''Set the event of the current state, clear the previous one.'''
        state = self.machine.state
        if state == self._state:
            return
        if self._state is not None:
            self._states[self._state].clear()
        self._state = state
        self._states[state].set()

    async def _run_forever(self) -> None:
        '''Feed messages, timeouts & commands to the state machine.

        Runs until cancelled, or until the transport fails.
        '''
        while True:
            receive = asyncio.create_task(
                self.transport.receive(deadline=self.machine.deadline),
                name=f'wait for DHCP messages on {self.config.interface}',
            )
            command = asyncio.create_task(
                self._commands.get(), name='wait for commands'
            )
            try:
                done, pending = await asyncio.wait(
                    (receive, command), return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (receive, command):
                    if not task.done():
                        task.cancel()
            for task in pending:
                with suppress(asyncio.CancelledError):
                    await task

            if receive in done:
                await self._process(receive.result())
            if command in done:
                cmd = command.result()
                LOG.info('%s requested', cmd.name.capitalize())
                await self._perform(getattr(self.machine, cmd)(time()))
            self._update_state()

    async def _process(self, datagram: Optional[Datagram]) -> None:
        '''Handle a received datagram, or a timeout if None.'''
        now = time()
        if datagram is None:
            await self._perform(self.machine.handle_timeout(now))
            return
        try:
            dhcp_msg = DHCPMessage.decode(datagram.data)
        except DecodeError as err:
            LOG.debug('Dropping packet from %s: %s', datagram.source, err)
            return
        msg = messages.ReceivedDHCPMessage(
            dhcp=dhcp_msg,
            ip_src=datagram.source[0],
            sport=datagram.source[1],
            received=now,
        )
        await self._perform(self.machine.handle_message(msg, now))

    async def _perform(self, actions: Iterable[Action]) -> None:
        '''Do what the state machine decided.'''
        for action in actions:
            if isinstance(action, Send):
                await self._send(action.message)
            elif isinstance(action, Apply):
                await self._apply(action)
            elif isinstance(action, Revoke):
                await self._revoke(action)

    async def _send(self, msg: messages.SentDHCPMessage) -> None:
        LOG.info('Sending %s', msg)
        data = msg.dhcp.encode()
        if msg.ip_dst is None:
            await self.transport.send_broadcast(data)
        else:
            await self.transport.send_unicast(msg.ip_dst, data)

    async def _apply(self, action: Apply) -> None:
        # whatever error might happen when writing a lease or running hooks,
        # it should never make the client crash
        try:
            self.config.lease_store.dump(action.lease)
        except Exception as exc:
            LOG.error('Could not dump lease: %r', exc)
        try:
            await self.applier.apply(action.lease, action.trigger)
        except Exception as exc:
            LOG.error('Could not apply lease: %r', exc)

    async def _revoke(self, action: Revoke) -> None:
        try:
            await self.applier.revoke(action.lease, action.trigger)
        except Exception as exc:
            LOG.error('Could not revoke lease: %r', exc)
        try:
            self.config.lease_store.remove(action.lease.interface)
        except Exception as exc:
            LOG.error('Could not remove lease: %r', exc)

    def _add_signal_handler(
        self,
        loop: asyncio.AbstractEventLoop,
        signal: Signals,
        command: Command,
    ):
        '''Arranges for `command` to be run when receiving `signal`.'''

        def _handler() -> None:
            LOG.info('%s received', signal.name)
            self._commands.put_nowait(command)

        loop.add_signal_handler(signal, _handler)

    def _register_signal_handlers(self):
        '''Add signal handlers to catch USR1, USR2 and HUP.

        Called by the context manager when `handle_signals` is True.

        - SIGUSR1 causes a renew,
        - SIGUSR2 causes a rebind,
        - SIGHUP causes a reset.
        '''
        LOG.info('Registering signal handlers for USR1, USR2 and HUP')
        loop = asyncio.get_running_loop()
        self._add_signal_handler(loop, Signals.SIGUSR1, Command.RENEW)
        self._add_signal_handler(loop, Signals.SIGUSR2, Command.REBIND)
        self._add_signal_handler(loop, Signals.SIGHUP, Command.RESET)

    def _remove_signal_handlers(self):
        remove_handler = asyncio.get_running_loop().remove_signal_handler
        LOG.info('Removing signal handlers for USR1, USR2 and HUP')
        remove_handler(Signals.SIGUSR1)
        remove_handler(Signals.SIGUSR2)
        remove_handler(Signals.SIGHUP)
