'''Fixtures shared by the dhcp client tests.'''

import random
from typing import Callable, Optional

import pytest
from fixtures.dhcp_servers import CLIENT_MAC
from fixtures.dhcp_servers.mock import mock_dhcp_server  # noqa: F401

from pydhcpc.client import ClientConfig
from pydhcpc.leases import NullLeaseStore
from pydhcpc.machine import LeaseStateMachine, MachineConfig
from pydhcpc.messages import Identity
from pydhcpc.timers import RetryPolicy


@pytest.fixture
def dhcp_client_host_name() -> Optional[str]:
    '''The hostname option sent in dhcp tests.'''
    return 'test-hostname'


@pytest.fixture
def dhcp_client_vendor_id() -> Optional[str]:
    '''The vendor id option sent in dhcp tests.'''
    return 'test-vendor-id'


@pytest.fixture
def fast_retries() -> RetryPolicy:
    '''Retransmit quickly, without jitter, and give up after 2 REQUESTs.'''
    return RetryPolicy(
        base_timeout=0.2, max_timeout=0.4, max_attempts=2, jitter=0
    )


@pytest.fixture
def client_config(
    dhcp_client_host_name: Optional[str],
    dhcp_client_vendor_id: Optional[str],
    fast_retries: RetryPolicy,
) -> ClientConfig:
    '''Fixture that returns a ClientConfig for a fake interface.

    Signal handlers & hooks are disabled, leases are not stored.
    '''
    return ClientConfig(
        interface='eth42',
        chaddr=CLIENT_MAC,
        lease_store=NullLeaseStore(),
        retry=fast_retries,
        vendor_id=dhcp_client_vendor_id,
        host_name=dhcp_client_host_name,
        handle_signals=False,
    )


@pytest.fixture
def identity() -> Identity:
    return Identity(chaddr=CLIENT_MAC, host_name='test-hostname')


@pytest.fixture
def machine(identity: Identity) -> LeaseStateMachine:
    '''A state machine with the default retry policy & seeded jitter.'''
    return LeaseStateMachine(
        MachineConfig(interface='eth42', identity=identity),
        rng=random.Random(42),
    )


@pytest.fixture
def set_fixed_xid(monkeypatch: pytest.MonkeyPatch) -> Callable[[int], None]:
    '''Set a static value to use instead of randomly generated xids.'''

    def _set_fixed_xid(xid: int):
        monkeypatch.setattr("pydhcpc.xids.random_xid", lambda: xid)

    return _set_fixed_xid
