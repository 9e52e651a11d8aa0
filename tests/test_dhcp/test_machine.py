import random
from typing import Any, Callable

import pytest
from fixtures.dhcp_servers import CLIENT_MAC, OFFERED_IP, SERVER_ID, reply

from pydhcpc.dhcp4msg import DHCPMessage
from pydhcpc.enums import bootp, dhcp
from pydhcpc.fsm import State, Trigger
from pydhcpc.leases import Lease
from pydhcpc.machine import (
    Action,
    Apply,
    LeaseStateMachine,
    MachineConfig,
    Revoke,
    Send,
)
from pydhcpc.messages import Identity, ReceivedDHCPMessage
from pydhcpc.timers import RetryPolicy


def sent(actions: list[Action]) -> DHCPMessage:
    '''The message of the only action, which must be a Send.'''
    assert len(actions) == 1
    (action,) = actions
    assert isinstance(action, Send)
    return action.message.dhcp


def answer(
    machine: LeaseStateMachine,
    msg_type: dhcp.MessageType,
    now: float,
    **kwargs: Any,
) -> list[Action]:
    '''Make the machine receive an answer to its in-flight message.'''
    in_flight = machine.client_state.in_flight
    assert in_flight is not None
    response = reply(in_flight.dhcp, msg_type, **kwargs)
    return machine.handle_message(
        ReceivedDHCPMessage(dhcp=response, ip_src=SERVER_ID), now
    )


def bind(machine: LeaseStateMachine, now: float = 0.0, **kwargs) -> Lease:
    '''Go from INIT to BOUND at `now`.'''
    machine.start(now)
    answer(machine, dhcp.MessageType.OFFER, now, **kwargs)
    actions = answer(machine, dhcp.MessageType.ACK, now, **kwargs)
    assert machine.state == State.BOUND
    assert actions == [Apply(machine.lease, Trigger.BOUND)]
    return machine.lease


def timeout(machine: LeaseStateMachine) -> list[Action]:
    '''Let the machine's deadline pass.'''
    assert machine.deadline is not None
    return machine.handle_timeout(machine.deadline)


def go_selecting(machine: LeaseStateMachine):
    machine.start(0.0)


def go_requesting(machine: LeaseStateMachine):
    machine.start(0.0)
    answer(machine, dhcp.MessageType.OFFER, 1.0)


def go_renewing(machine: LeaseStateMachine):
    bind(machine)
    timeout(machine)


def go_rebinding(machine: LeaseStateMachine):
    bind(machine)
    machine.rebind(70.0)


def test_get_a_lease(machine: LeaseStateMachine):
    '''DISCOVER, OFFER, REQUEST, ACK.'''
    assert machine.state == State.INIT
    assert machine.deadline is None
    discover = sent(machine.start(0.0))
    assert discover.message_type == dhcp.MessageType.DISCOVER
    assert machine.state == State.SELECTING
    # 4 seconds +/- 1
    assert 3 <= machine.deadline <= 5

    actions = answer(
        machine,
        dhcp.MessageType.OFFER,
        now=1.0,
        yiaddr='10.0.0.5',
        lease_time=3600,
        renewal_time=1800,
        rebinding_time=3150,
    )
    assert machine.state == State.REQUESTING
    request = sent(actions)
    assert request.message_type == dhcp.MessageType.REQUEST
    assert request.xid == discover.xid
    assert request.get(dhcp.Option.REQUESTED_IP) == '10.0.0.5'
    assert request.get(dhcp.Option.SERVER_ID) == SERVER_ID

    actions = answer(
        machine,
        dhcp.MessageType.ACK,
        now=1.5,
        yiaddr='10.0.0.5',
        lease_time=3600,
        renewal_time=1800,
        rebinding_time=3150,
    )
    assert machine.state == State.BOUND
    lease = machine.lease
    assert actions == [Apply(lease, Trigger.BOUND)]
    assert lease.ip == '10.0.0.5'
    assert lease.lease_time == 3600
    assert lease.renewal_time == 1800
    assert lease.rebinding_time == 3150
    # the lease starts when the REQUEST was sent
    assert lease.obtained == 1.0
    assert machine.deadline == 1801.0
    assert machine.xid is None


def test_requesting_timeouts_start_over(machine: LeaseStateMachine):
    go_requesting(machine)
    xid = machine.xid
    requests = [machine.client_state.in_flight.dhcp]
    for _ in range(2):
        requests.append(sent(timeout(machine)))
        assert machine.state == State.REQUESTING
    assert all(i.message_type == dhcp.MessageType.REQUEST for i in requests)
    assert all(i.xid == xid for i in requests)
    # the third timeout gives up
    assert timeout(machine) == []
    assert machine.state == State.INIT
    assert machine.offer is None
    assert machine.xid is None
    # and a new DISCOVER goes out right away, in a new exchange
    discover = sent(timeout(machine))
    assert discover.message_type == dhcp.MessageType.DISCOVER
    assert machine.state == State.SELECTING
    assert machine.xid is not None
    assert machine.xid != xid


def test_requesting_timeouts_increase(machine: LeaseStateMachine):
    machine.config.retry = RetryPolicy(jitter=0)
    go_requesting(machine)
    assert machine.deadline == 5.0
    timeout(machine)
    assert machine.deadline == 13.0
    timeout(machine)
    assert machine.deadline == 29.0


def test_selecting_retransmits_forever(machine: LeaseStateMachine):
    discover = sent(machine.start(0.0))
    for _ in range(20):
        now = machine.deadline
        retransmitted = sent(timeout(machine))
        assert machine.state == State.SELECTING
        assert retransmitted.xid == discover.xid
        # 64 seconds +/- 1
        assert machine.deadline - now <= 65
    assert machine.attempt == 20


def test_renewing_times_out_to_rebinding(machine: LeaseStateMachine):
    lease = bind(machine, lease_time=3600, renewal_time=1800)
    assert machine.deadline == 1800
    renew = timeout(machine)
    assert machine.state == State.RENEWING
    requests = [renew]
    while machine.state == State.RENEWING:
        # never wait past T2
        assert machine.deadline <= 3150
        requests.append(timeout(machine))
    assert machine.state == State.REBINDING
    for actions in requests[:-1]:
        (action,) = actions
        assert isinstance(action, Send)
        assert action.message.ip_dst == lease.server_id
        assert action.message.dhcp.ciaddr == lease.ip
    rebind = requests[-1]
    (action,) = rebind
    assert isinstance(action, Send)
    assert action.message.broadcast
    assert action.message.dhcp.ciaddr == lease.ip
    assert action.message.xid != renew[0].message.xid


def test_rebinding_times_out_to_expiration(machine: LeaseStateMachine):
    lease = bind(machine, lease_time=100)
    machine.rebind(90.0)
    while machine.state == State.REBINDING:
        assert machine.deadline <= 100
        actions = timeout(machine)
    assert actions == [Revoke(lease, Trigger.EXPIRED)]
    assert machine.state == State.INIT
    assert machine.lease is None
    assert machine.deadline == 100


@pytest.mark.parametrize(
    ('go_to_state', 'state'),
    (
        (go_selecting, State.SELECTING),
        (go_requesting, State.REQUESTING),
        (go_renewing, State.RENEWING),
        (go_rebinding, State.REBINDING),
    ),
)
def test_wrong_xid_is_discarded(
    machine: LeaseStateMachine,
    go_to_state: Callable[[LeaseStateMachine], None],
    state: State,
    caplog: pytest.LogCaptureFixture,
):
    caplog.set_level('DEBUG', logger='pydhcpc')
    go_to_state(machine)
    assert machine.state == state
    client_state = repr(machine.client_state)
    in_flight = machine.client_state.in_flight
    for msg_type in (dhcp.MessageType.OFFER, dhcp.MessageType.ACK):
        response = reply(in_flight.dhcp, msg_type).replace(
            xid=(in_flight.xid + 1) % 0xFFFFFFFF
        )
        msg = ReceivedDHCPMessage(dhcp=response, ip_src=SERVER_ID)
        assert machine.handle_message(msg, 2.0) == []
    assert 'Incorrect xid' in caplog.text
    assert repr(machine.client_state) == client_state


@pytest.mark.parametrize(
    'change',
    (
        {'op': bootp.MessageType.BOOTREQUEST},
        {'chaddr': '00:11:22:33:44:55'},
    ),
)
def test_foreign_replies_are_discarded(
    machine: LeaseStateMachine, change: dict
):
    go_selecting(machine)
    offer = reply(machine.client_state.in_flight.dhcp, dhcp.MessageType.OFFER)
    msg = ReceivedDHCPMessage(dhcp=offer.replace(**change))
    assert machine.handle_message(msg, 1.0) == []
    assert machine.state == State.SELECTING


def test_chaddr_is_case_insensitive(machine: LeaseStateMachine):
    go_selecting(machine)
    offer = reply(machine.client_state.in_flight.dhcp, dhcp.MessageType.OFFER)
    msg = ReceivedDHCPMessage(dhcp=offer.replace(chaddr=CLIENT_MAC.upper()))
    assert sent(machine.handle_message(msg, 1.0)).message_type == (
        dhcp.MessageType.REQUEST
    )


def test_message_when_idle_is_discarded(machine: LeaseStateMachine):
    offer = reply(DHCPMessage(chaddr=CLIENT_MAC), dhcp.MessageType.OFFER)
    assert machine.handle_message(ReceivedDHCPMessage(dhcp=offer), 0.0) == []
    assert machine.state == State.INIT


def test_first_offer_wins(machine: LeaseStateMachine):
    go_requesting(machine)
    assert machine.offer.yiaddr == OFFERED_IP
    actions = answer(machine, dhcp.MessageType.OFFER, 1.5, yiaddr='10.9.9.9')
    assert actions == []
    assert machine.state == State.REQUESTING
    assert machine.offer.yiaddr == OFFERED_IP


@pytest.mark.parametrize(
    'kwargs', ({'yiaddr': '0.0.0.0'}, {'server_id': None})
)
def test_unusable_offer(machine: LeaseStateMachine, kwargs: dict):
    go_selecting(machine)
    assert answer(machine, dhcp.MessageType.OFFER, 1.0, **kwargs) == []
    assert machine.state == State.SELECTING


def test_ack_in_selecting_is_ignored(machine: LeaseStateMachine):
    go_selecting(machine)
    assert answer(machine, dhcp.MessageType.ACK, 1.0) == []
    assert machine.state == State.SELECTING


def test_ack_without_lease_time(machine: LeaseStateMachine):
    go_requesting(machine)
    assert answer(machine, dhcp.MessageType.ACK, 2.0, lease_time=None) == []
    assert machine.state == State.REQUESTING
    assert machine.lease is None


def test_ack_without_server_id(machine: LeaseStateMachine):
    '''The lease is renewed with the server that made the offer.'''
    go_requesting(machine)
    answer(machine, dhcp.MessageType.ACK, 2.0, server_id=None)
    assert machine.state == State.BOUND
    assert machine.lease.server_id == SERVER_ID
    timeout(machine)
    assert machine.state == State.RENEWING
    answer(machine, dhcp.MessageType.ACK, 70.0, server_id=None)
    assert machine.lease.server_id == SERVER_ID
    request = sent(timeout(machine))
    assert machine.client_state.in_flight.ip_dst == SERVER_ID
    assert request.ciaddr == OFFERED_IP


def test_nak_while_requesting(machine: LeaseStateMachine):
    go_requesting(machine)
    assert answer(machine, dhcp.MessageType.NAK, 2.0) == []
    assert machine.state == State.INIT
    assert machine.offer is None
    assert machine.xid is None
    # start over right away
    assert machine.deadline == 2.0


def test_nak_while_renewing(machine: LeaseStateMachine):
    go_renewing(machine)
    lease = machine.lease
    actions = answer(machine, dhcp.MessageType.NAK, 70.0)
    assert actions == [Revoke(lease, Trigger.NAK)]
    assert machine.state == State.INIT
    assert machine.lease is None
    # the refused address is not asked for again
    discover = sent(timeout(machine))
    assert dhcp.Option.REQUESTED_IP not in discover


@pytest.mark.parametrize(
    ('go_to_state', 'trigger'),
    ((go_renewing, Trigger.RENEWED), (go_rebinding, Trigger.REBOUND)),
)
def test_lease_extended(
    machine: LeaseStateMachine,
    go_to_state: Callable[[LeaseStateMachine], None],
    trigger: Trigger,
):
    go_to_state(machine)
    now = machine.client_state.exchange_started
    actions = answer(machine, dhcp.MessageType.ACK, now + 1, lease_time=300)
    assert machine.state == State.BOUND
    assert actions == [Apply(machine.lease, trigger)]
    assert machine.lease.lease_time == 300
    assert machine.lease.obtained == now
    assert machine.deadline == now + 150


def test_infinite_lease(machine: LeaseStateMachine):
    bind(machine, lease_time=0xFFFFFFFF)
    assert machine.lease.infinite
    assert machine.deadline is None
    assert machine.handle_timeout(1e12) == []
    assert machine.state == State.BOUND


def test_early_timeout_does_nothing(machine: LeaseStateMachine):
    machine.start(0.0)
    assert machine.handle_timeout(machine.deadline - 0.1) == []
    assert machine.attempt == 0


def test_release(machine: LeaseStateMachine):
    lease = bind(machine)
    send, revoke = machine.release(10.0)
    assert isinstance(send, Send)
    assert send.message.message_type == dhcp.MessageType.RELEASE
    assert send.message.ip_dst == lease.server_id
    assert send.message.dhcp.ciaddr == lease.ip
    assert revoke == Revoke(lease, Trigger.UNBOUND)
    assert machine.state == State.INIT
    assert machine.lease is None
    # idle until started again
    assert machine.deadline is None


def test_release_expired_lease(machine: LeaseStateMachine):
    lease = bind(machine, lease_time=60)
    assert machine.release(100.0) == [Revoke(lease, Trigger.UNBOUND)]


def test_release_without_lease(machine: LeaseStateMachine):
    go_selecting(machine)
    assert machine.release(1.0) == []
    assert machine.state == State.INIT
    assert machine.deadline is None


def test_renew_command(machine: LeaseStateMachine):
    lease = bind(machine)
    request = sent(machine.renew(5.0))
    assert machine.state == State.RENEWING
    assert request.ciaddr == lease.ip
    assert machine.client_state.in_flight.ip_dst == lease.server_id
    # only possible when bound
    assert machine.renew(6.0) == []


def test_rebind_command(machine: LeaseStateMachine):
    bind(machine)
    sent(machine.rebind(5.0))
    assert machine.state == State.REBINDING
    assert machine.client_state.in_flight.broadcast
    assert machine.rebind(6.0) == []


def test_commands_without_lease(machine: LeaseStateMachine):
    assert machine.renew(0.0) == []
    assert machine.rebind(0.0) == []
    assert machine.state == State.INIT


def test_reset(machine: LeaseStateMachine):
    lease = bind(machine)
    assert machine.reset(5.0) == [Revoke(lease, Trigger.UNBOUND)]
    assert machine.state == State.INIT
    assert machine.deadline == 5.0
    discover = sent(timeout(machine))
    # the previous lease is still a good hint
    assert discover.get(dhcp.Option.REQUESTED_IP) == lease.ip


def test_start_twice(machine: LeaseStateMachine):
    machine.start(0.0)
    xid = machine.xid
    assert machine.start(1.0) == []
    assert machine.xid == xid


def test_secs_field(machine: LeaseStateMachine):
    assert sent(machine.start(100.0)).secs == 0
    deadline = machine.deadline
    assert sent(timeout(machine)).secs == int(deadline - 100.0)


def test_previous_lease_hint(identity: Identity):
    previous_lease = Lease(
        interface='eth42',
        ip='192.168.186.42',
        server_id=SERVER_ID,
        lease_time=3600,
        obtained=0.0,
    )
    machine = LeaseStateMachine(
        MachineConfig(interface='eth42', identity=identity),
        previous_lease=previous_lease,
        rng=random.Random(),
    )
    discover = sent(machine.start(10.0))
    assert discover.get(dhcp.Option.REQUESTED_IP) == '192.168.186.42'
    # unless it's expired
    machine.release(20.0)
    assert machine.start(4000.0)
    in_flight = machine.client_state.in_flight
    assert dhcp.Option.REQUESTED_IP not in in_flight.dhcp


def test_invalid_transition(machine: LeaseStateMachine):
    with pytest.raises(ValueError):
        machine.state = State.BOUND
    assert machine.state == State.INIT


def test_transitions_are_logged(
    machine: LeaseStateMachine, caplog: pytest.LogCaptureFixture
):
    caplog.set_level('INFO', logger='pydhcpc')
    bind(machine)
    assert [
        i.getMessage() for i in caplog.records if ' -> ' in i.getMessage()
    ] == [
        'INIT -> SELECTING',
        'SELECTING -> REQUESTING',
        'REQUESTING -> BOUND',
    ]
