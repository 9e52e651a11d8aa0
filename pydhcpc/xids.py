from secrets import SystemRandom
from typing import Any, Optional, Union

random = SystemRandom()


def random_xid() -> int:
    '''A random, non-zero 32 bit transaction id.'''
    return random.randint(0x00000001, 0xFFFFFFFF)


class Xid:
    '''Transaction IDs used to identify responses to DHCP requests.

    A new xid is drawn for every exchange (DISCOVER/OFFER/REQUEST/ACK,
    each renewal, each rebinding). Servers answer with the same value
    (see RFC 2131 section 4.1), so replies carrying any other xid are
    answers to somebody else, or to an exchange we gave up on.
    '''

    def __init__(self, value: Optional[Union[int, 'Xid']] = None):
        if isinstance(value, Xid):
            int_value = int(value)
        elif isinstance(value, int):
            int_value = value
        elif value is None:
            int_value = random_xid()
        else:
            raise TypeError(f'{value!r} is not an xid')
        if not 0 <= int_value <= 0xFFFFFFFF:
            raise ValueError(f'{int_value:#x} does not fit in 32 bits')
        self._value = int_value

    def __index__(self) -> int:
        '''Allows xids to be used as int.'''
        return self._value

    def __int__(self) -> int:
        return self._value

    def matches(self, received_xid: Union[int, 'Xid']) -> bool:
        '''Whether a received xid answers the exchange using this one.'''
        return self == received_xid

    def __eq__(self, other: Any) -> bool:
        '''Xids compare to other xids or ints.'''
        if isinstance(other, Xid):
            return self._value == other._value
        elif isinstance(other, int):
            return self._value == other
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return f'{self._value:#010x}'

    def __repr__(self) -> str:
        return f"Xid({self})"
