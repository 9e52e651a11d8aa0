'''Retransmission backoff & lease renewal, rebinding, expiration times.'''

import dataclasses
import random
from logging import getLogger
from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from pydhcpc.leases import Lease

LOG = getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    '''How long to wait for answers, and how many times to ask.

    The n-th retransmission (starting at 0) waits
    `min(base_timeout * multiplier ** n, max_timeout)` seconds, give or take
    `jitter` seconds so that clients restarting together don't flood the
    network in sync. RFC 2131 section 4.1 suggests 4s doubling up to 64s,
    randomized by +/- 1s.
    '''

    # Seconds to wait after the first transmission
    base_timeout: float = 4.0
    # Factor applied to the timeout after each retransmission
    multiplier: float = 2.0
    # Upper bound for a single timeout
    max_timeout: float = 64.0
    # Transmissions in the REQUESTING state before starting over
    max_attempts: int = 3
    # Maximum random offset added to or removed from each timeout
    jitter: float = 1.0

    def __post_init__(self) -> None:
        if self.base_timeout <= 0:
            raise ValueError('base_timeout must be > 0')
        if self.multiplier < 1:
            raise ValueError('multiplier must be >= 1')
        if self.max_timeout < self.base_timeout:
            raise ValueError('max_timeout must be >= base_timeout')
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        if self.jitter < 0:
            raise ValueError('jitter must be >= 0')
        if self.jitter >= self.base_timeout:
            raise ValueError('jitter must be < base_timeout')

    def sample_jitter(self, rng: random.Random) -> float:
        '''Draw a random offset in [-jitter, +jitter].'''
        if not self.jitter:
            return 0.0
        return rng.uniform(-self.jitter, self.jitter)


def retransmission_timeout(
    policy: RetryPolicy, attempt: int, jitter: float = 0.0
) -> float:
    '''Seconds to wait for an answer to the transmission number `attempt`.

    `jitter` is an offset previously drawn with `policy.sample_jitter()`.
    The result is always within [0, policy.max_timeout].
    '''
    if attempt < 0:
        raise ValueError('attempt must be >= 0')
    try:
        timeout = policy.base_timeout * policy.multiplier**attempt
    except OverflowError:
        timeout = policy.max_timeout
    timeout = min(timeout, policy.max_timeout) + jitter
    return max(0.0, min(timeout, policy.max_timeout))


def backoff(
    policy: RetryPolicy, rng: Optional[random.Random] = None
) -> Iterator[float]:
    '''Yields seconds to wait until the next retry, forever.'''
    rng = rng or random.Random()
    attempt = 0
    while True:
        yield retransmission_timeout(
            policy, attempt, policy.sample_jitter(rng)
        )
        attempt += 1


def bounded_deadline(
    now: float, timeout: float, limit: Optional[float]
) -> float:
    '''`now + timeout`, but never later than `limit` (if any).'''
    deadline = now + timeout
    if limit is not None:
        deadline = min(deadline, limit)
    return deadline


def _lease_timer(lease: 'Lease', seconds: Optional[float]) -> Optional[float]:
    if seconds is None:
        # infinite lease
        return None
    return lease.obtained + seconds


def renewal_at(lease: 'Lease') -> Optional[float]:
    '''When to enter RENEWING (T1), None if the lease is infinite.'''
    return _lease_timer(lease, lease.renewal_time)


def rebinding_at(lease: 'Lease') -> Optional[float]:
    '''When to enter REBINDING (T2), None if the lease is infinite.'''
    return _lease_timer(lease, lease.rebinding_time)


def expiration_at(lease: 'Lease') -> Optional[float]:
    '''When the lease is lost, None if the lease is infinite.'''
    return _lease_timer(lease, lease.lease_time)
