'''The lease acquisition state machine.

The machine does no I/O and never reads the clock: every operation takes
the current time and returns a list of actions for the caller to perform,
in order:

- `Send`: send a message (broadcast, or unicast to `message.ip_dst`);
- `Apply`: configure the interface with a new lease;
- `Revoke`: remove the configuration of a lost lease.

Between two operations, the caller waits for a message until
`machine.deadline`, and calls `handle_timeout()` if none arrived::

    machine = LeaseStateMachine(config)
    actions = machine.start(now=time())
    while True:
        perform(actions)
        msg = receive_until(machine.deadline)
        if msg is None:
            actions = machine.handle_timeout(now=time())
        else:
            actions = machine.handle_message(msg, now=time())

'''

import dataclasses
import random
from logging import getLogger
from typing import Optional, Union

from pydhcpc import messages
from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums import bootp
from pydhcpc.enums.dhcp import Option
from pydhcpc.exceptions import DHCPError, RetryExhausted
from pydhcpc.fsm import TRANSITIONS, State, Trigger, state_guard
from pydhcpc.leases import Lease
from pydhcpc.timers import (
    RetryPolicy,
    bounded_deadline,
    expiration_at,
    rebinding_at,
    renewal_at,
    retransmission_timeout,
)
from pydhcpc.xids import Xid

LOG = getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Send:
    message: messages.SentDHCPMessage


@dataclasses.dataclass(frozen=True)
class Apply:
    lease: Lease
    trigger: Trigger


@dataclasses.dataclass(frozen=True)
class Revoke:
    lease: Lease
    trigger: Trigger


Action = Union[Send, Apply, Revoke]


@dataclasses.dataclass
class MachineConfig:
    '''What the state machine needs to know about the client.'''

    # The interface leases are requested for
    interface: str
    # Hardware address, client id, requested parameters...
    identity: messages.Identity
    retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)


@dataclasses.dataclass
class ClientState:
    '''Everything the state machine knows at a given time.'''

    state: State = State.INIT
    # xid of the current exchange, None when not waiting for an answer
    xid: Optional[Xid] = None
    # the last message sent in the current exchange
    in_flight: Optional[messages.SentDHCPMessage] = None
    # when to retransmit, or give up, or renew...
    deadline: Optional[float] = None
    # transmissions of the in-flight message, minus one
    attempt: int = 0
    # used to fill the `secs` field
    exchange_started: float = 0.0
    # the lease time counts from the first REQUEST of the exchange
    request_sent: float = 0.0
    # the OFFER being requested
    offer: Optional[DHCPMessage] = None
    lease: Optional[Lease] = None


class LeaseStateMachine:
    '''DHCP client finite state machine for a single interface.

    `previous_lease` is a lease loaded from a previous run; its address
    is asked for again in DISCOVER messages.
    `rng` is the random source for retransmission jitter.
    '''

    def __init__(
        self,
        config: MachineConfig,
        previous_lease: Optional[Lease] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.previous_lease = previous_lease
        self.rng = rng or random.Random()
        self._client = ClientState()

    # properties

    @property
    def client_state(self) -> ClientState:
        return self._client

    @property
    def state(self) -> State:
        '''The current client state.'''
        return self._client.state

    @state.setter
    def state(self, value: State) -> None:
        '''Check the client can transition to the state, and set it.'''
        old_state = self._client.state
        if value not in TRANSITIONS[old_state]:
            raise ValueError(
                f'Cannot transition from {old_state.name} to {value.name}'
            )
        LOG.info('%s -> %s', old_state.name, value.name)
        self._client.state = value

    @property
    def deadline(self) -> Optional[float]:
        '''When `handle_timeout()` must be called, None if idle.'''
        return self._client.deadline

    @property
    def lease(self) -> Optional[Lease]:
        '''The current lease, if we have one.'''
        return self._client.lease

    @property
    def xid(self) -> Optional[Xid]:
        '''The xid of the current exchange.'''
        return self._client.xid

    @property
    def offer(self) -> Optional[DHCPMessage]:
        return self._client.offer

    @property
    def attempt(self) -> int:
        return self._client.attempt

    # public api

    @state_guard(State.INIT)
    def start(self, now: float) -> list[Action]:
        '''Start looking for a lease by broadcasting a DISCOVER.'''
        self._new_exchange(now)
        self._client.offer = None
        self.state = State.SELECTING
        return self._transmit(now)

    def handle_timeout(self, now: float) -> list[Action]:
        '''Called when the deadline passed without a valid answer.'''
        deadline = self._client.deadline
        if deadline is None or now < deadline:
            LOG.debug('No timeout to handle at %.2f', now)
            return []
        state = self.state
        if state == State.INIT:
            return self.start(now)
        if state == State.SELECTING:
            # keep looking for a server forever
            return self._retransmit(now)
        if state == State.REQUESTING:
            try:
                return self._retransmit(
                    now, max_attempts=self.config.retry.max_attempts
                )
            except RetryExhausted as err:
                LOG.warning('%s for the REQUEST, starting over', err)
                self._restart(now)
                return []
        if state == State.BOUND:
            return self._renew(now)
        assert self.lease, 'no lease in a leased state'
        if state == State.RENEWING:
            t2 = rebinding_at(self.lease)
            if t2 is not None and now >= t2:
                return self._rebind(now)
            return self._retransmit(now)
        # REBINDING
        expiration = expiration_at(self.lease)
        if expiration is not None and now >= expiration:
            return self._expire(now)
        return self._retransmit(now)

    def handle_message(
        self, msg: messages.ReceivedDHCPMessage, now: float
    ) -> list[Action]:
        '''Processes a received DHCP message.

        The messages's xid is checked against the client's xid, and the
        appropriate handler (`self.<msg type>_received`) is then called
        if it exists. Messages that fail these checks are discarded.
        '''
        LOG.info('Received %s', msg)
        xid = self._client.xid
        if xid is None:
            LOG.debug('No exchange in progress, discarding %s', msg.dhcp)
            return []
        if not xid.matches(msg.xid):
            LOG.debug(
                'Incorrect xid %#010x (expected %s), discarding',
                msg.xid,
                xid,
            )
            return []
        if msg.dhcp.op != bootp.MessageType.BOOTREPLY:
            LOG.debug('Not a BOOTREPLY, discarding')
            return []
        if msg.dhcp.chaddr.lower() != self.config.identity.chaddr.lower():
            LOG.debug('Reply is for %s, discarding', msg.dhcp.chaddr)
            return []
        msg_type = msg.message_type
        if msg_type is None:
            LOG.debug('No valid message type, discarding')
            return []
        handler = getattr(self, f'{msg_type.name.lower()}_received', None)
        if not handler:
            LOG.debug('DHCP %s messages are not handled', msg_type.name)
            return []
        return handler(msg, now)

    def release(self, now: float) -> list[Action]:
        '''Give up the current lease, if any, and stop.

        The RELEASE is sent once; servers may not receive it.
        The machine stays idle in INIT until `start()` is called.
        '''
        actions: list[Action] = []
        lease = self.lease
        if lease is not None:
            if not lease.expired(now):
                actions.append(
                    Send(
                        messages.release(
                            identity=self.config.identity,
                            xid=int(Xid()),
                            lease=lease,
                        )
                    )
                )
            actions.append(Revoke(lease, Trigger.UNBOUND))
        self._restart(now)
        self._client.deadline = None
        return actions

    def reset(self, now: float) -> list[Action]:
        '''Forget everything and start again right away.'''
        actions: list[Action] = []
        if self.lease is not None:
            actions.append(Revoke(self.lease, Trigger.UNBOUND))
        self._restart(now)
        return actions

    def renew(self, now: float) -> list[Action]:
        '''Renew the lease now instead of waiting for T1.'''
        return self._renew(now)

    def rebind(self, now: float) -> list[Action]:
        '''Rebind the lease now instead of waiting for T2.'''
        return self._rebind(now)

    # Callbacks for received DHCP messages

    @state_guard(State.SELECTING)
    def offer_received(
        self, msg: messages.ReceivedDHCPMessage, now: float
    ) -> list[Action]:
        '''Called when an OFFER is received.

        Sends a REQUEST for the offered IP address.
        The first usable OFFER wins.
        '''
        offer = msg.dhcp
        if offer.yiaddr == '0.0.0.0':
            LOG.warning('OFFER without an address, ignoring')
            return []
        try:
            server_id = offer.require(Option.SERVER_ID)
        except DHCPError as err:
            LOG.warning('Invalid OFFER, ignoring: %s', err)
            return []
        LOG.info('Got offer for %s from %s', offer.yiaddr, server_id)
        self._client.offer = offer
        self._client.attempt = 0
        self._client.request_sent = now
        self.state = State.REQUESTING
        return self._transmit(now)

    @state_guard(State.REQUESTING, State.RENEWING, State.REBINDING)
    def ack_received(
        self, msg: messages.ReceivedDHCPMessage, now: float
    ) -> list[Action]:
        '''Called when an ACK is received.

        Stores the lease and puts the client in the BOUND state.
        '''
        ack = msg.dhcp
        if Option.LEASE_TIME not in ack:
            # that would not make sense at all, but still...
            LOG.warning('Server did not define a lease time, ignoring ACK.')
            return []
        if ack.yiaddr == '0.0.0.0':
            LOG.warning('ACK without an address, ignoring')
            return []
        # the server that made the offer, or granted the lease being renewed
        if self.state == State.REQUESTING and self._client.offer:
            known_server = self._client.offer.get(Option.SERVER_ID)
        else:
            known_server = self.lease.server_id if self.lease else None
        try:
            lease = Lease.from_ack(
                ack,
                interface=self.config.interface,
                obtained=self._client.request_sent,
                server_id=known_server,
            )
        except DHCPError as err:
            LOG.warning('Invalid ACK, ignoring: %s', err)
            return []

        trigger = {
            State.REQUESTING: Trigger.BOUND,
            State.RENEWING: Trigger.RENEWED,
            State.REBINDING: Trigger.REBOUND,
        }[self.state]
        LOG.info('Got lease for %s from %s', lease.ip, lease.server_id)
        self._bind(lease)
        return [Apply(lease, trigger)]

    @state_guard(State.REQUESTING, State.RENEWING, State.REBINDING)
    def nak_received(
        self, msg: messages.ReceivedDHCPMessage, now: float
    ) -> list[Action]:
        '''Called when a NAK is received.

        Resets the client and starts looking for a new IP.
        '''
        LOG.warning(
            'NAK received from %s: %s',
            msg.ip_src,
            msg.dhcp.get(Option.MESSAGE, 'no message'),
        )
        actions: list[Action] = []
        if self.lease is not None:
            actions.append(Revoke(self.lease, Trigger.NAK))
        # the server refused it, don't ask for it again
        self.previous_lease = None
        self._restart(now)
        return actions

    # internal methods

    def _new_exchange(self, now: float) -> None:
        self._client.xid = Xid()
        self._client.attempt = 0
        self._client.exchange_started = now
        self._client.request_sent = now

    def _build_message(self, now: float) -> messages.SentDHCPMessage:
        '''Build the message to (re)send in the current state.'''
        identity = self.config.identity
        xid = int(self._client.xid)
        secs = int(now - self._client.exchange_started)
        state = self.state
        if state == State.SELECTING:
            requested_ip = None
            if self.previous_lease and not self.previous_lease.expired(now):
                requested_ip = self.previous_lease.ip
            return messages.discover(
                identity, xid, secs=secs, requested_ip=requested_ip
            )
        if state == State.REQUESTING:
            assert self._client.offer, 'cannot request without an offer'
            return messages.request_for_offer(
                identity, xid, offer=self._client.offer, secs=secs
            )
        assert self.lease, 'cannot renew or rebind without a lease'
        assert state in (State.RENEWING, State.REBINDING)
        return messages.request_for_lease(
            identity, xid, lease=self.lease, state=state, secs=secs
        )

    def _limit(self) -> Optional[float]:
        '''When to stop retransmitting in the current state.'''
        if self.state == State.RENEWING and self.lease:
            return rebinding_at(self.lease)
        if self.state == State.REBINDING and self.lease:
            return expiration_at(self.lease)
        return None

    def _transmit(self, now: float) -> list[Action]:
        '''Send the message for the current state & arm the deadline.'''
        msg = self._build_message(now)
        self._client.in_flight = msg
        policy = self.config.retry
        timeout = retransmission_timeout(
            policy, self._client.attempt, policy.sample_jitter(self.rng)
        )
        self._client.deadline = bounded_deadline(now, timeout, self._limit())
        LOG.debug(
            '%.1f seconds until retransmission',
            self._client.deadline - now,
        )
        return [Send(msg)]

    def _retransmit(
        self, now: float, max_attempts: Optional[int] = None
    ) -> list[Action]:
        '''Send the in-flight message again, with a longer timeout.

        Raises `RetryExhausted` after `max_attempts` transmissions.
        '''
        self._client.attempt += 1
        if max_attempts is not None and self._client.attempt >= max_attempts:
            raise RetryExhausted(self._client.attempt)
        LOG.info(
            'No answer in %s state, retransmitting (attempt %d)',
            self.state.name,
            self._client.attempt + 1,
        )
        return self._transmit(now)

    def _bind(self, lease: Lease) -> None:
        self.state = State.BOUND
        self._client.lease = lease
        self.previous_lease = lease
        self._client.xid = None
        self._client.in_flight = None
        self._client.offer = None
        self._client.attempt = 0
        self._client.deadline = renewal_at(lease)
        if self._client.deadline is None:
            LOG.info('Lease is infinite, no renewal needed')
        else:
            LOG.info(
                'Renewal scheduled in %.2fs',
                self._client.deadline - lease.obtained,
            )

    @state_guard(State.BOUND)
    def _renew(self, now: float) -> list[Action]:
        '''T1 expired, ask the server which granted the lease to extend it.'''
        LOG.info('Renewing lease')
        self._new_exchange(now)
        self.state = State.RENEWING
        return self._transmit(now)

    @state_guard(State.BOUND, State.RENEWING)
    def _rebind(self, now: float) -> list[Action]:
        '''T2 expired, ask any server to extend the lease.'''
        LOG.info('Rebinding lease')
        self._new_exchange(now)
        self.state = State.REBINDING
        return self._transmit(now)

    def _expire(self, now: float) -> list[Action]:
        lease = self.lease
        assert lease, 'no lease to expire'
        LOG.warning('Lease for %s expired', lease.ip)
        self._restart(now)
        return [Revoke(lease, Trigger.EXPIRED)]

    def _restart(self, now: float) -> None:
        '''Go back to INIT, and start again at the next timeout.'''
        if self.state != State.INIT:
            self.state = State.INIT
        self._client.xid = None
        self._client.in_flight = None
        self._client.offer = None
        self._client.lease = None
        self._client.attempt = 0
        self._client.deadline = now
