'''DHCP client state machine helpers.'''

import functools
from enum import IntEnum, StrEnum, auto
from logging import getLogger
from typing import Any, Callable, Final, TypeVar

LOG = getLogger(__name__)


class State(IntEnum):
    '''DHCP client states.

    see
    http://www.tcpipguide.com/free/t_DHCPGeneralOperationandClientFiniteStateMachine.htm
    '''

    INIT = auto()
    SELECTING = auto()
    REQUESTING = auto()
    BOUND = auto()
    RENEWING = auto()
    REBINDING = auto()


class Trigger(StrEnum):
    '''Events that make the client apply or revoke a lease.'''

    # The client has obtained a new lease
    BOUND = auto()
    # The client has voluntarily relinquished its lease
    UNBOUND = auto()
    # The client has renewed its lease after the renewal timer expired
    RENEWED = auto()
    # The client has rebound its lease after the rebinding timer expired
    REBOUND = auto()
    # The lease has expired (the client will restart the lease process)
    EXPIRED = auto()
    # A server refused to extend the lease
    NAK = auto()


# allowed transitions between states
TRANSITIONS: Final[dict[State, set[State]]] = {
    State.INIT: {State.INIT, State.SELECTING},
    State.SELECTING: {State.REQUESTING, State.INIT},
    State.REQUESTING: {State.BOUND, State.INIT},
    State.BOUND: {State.INIT, State.RENEWING, State.REBINDING},
    State.RENEWING: {State.BOUND, State.INIT, State.REBINDING},
    State.REBINDING: {State.BOUND, State.INIT},
}

# States in which the client holds a lease
LEASED_STATES: Final[frozenset[State]] = frozenset(
    (State.BOUND, State.RENEWING, State.REBINDING)
)

Handler = TypeVar('Handler', bound=Callable[..., list])


def state_guard(*states: State) -> Callable[[Handler], Handler]:
    '''Decorator that prevents a method from running

    if the associated instance is not in one of the given States.
    The method returns no actions in that case.'''

    def decorator(meth: Handler) -> Handler:
        @functools.wraps(meth)
        def wrapper(self, *args: Any, **kwargs: Any) -> list:
            if self.state not in states:
                LOG.debug(
                    'Ignoring call to %r in %s state',
                    meth.__name__,
                    self.state.name,
                )
                return []
            return meth(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
