from typing import Union

from pydhcpc.enums.dhcp import Option


class DHCPError(Exception):
    '''
    Base dhcp error
    '''

    pass


class DecodeError(DHCPError, ValueError):
    '''
    A received buffer is not a valid DHCP message.

    The client drops such packets and keeps waiting.
    '''

    pass


class TruncatedPacketError(DecodeError):
    '''
    The buffer is shorter than the fixed BOOTP header
    '''

    def __init__(self, length: int, expected: int):
        super().__init__(
            f'Truncated packet: got {length} bytes, '
            f'need at least {expected}'
        )
        self.length = length


class MagicCookieMismatchError(DecodeError):
    '''
    The DHCP magic cookie is missing after the BOOTP header
    '''

    def __init__(self, cookie: bytes):
        super().__init__(f'Bad magic cookie {cookie.hex(":") or "(none)"}')
        self.cookie = cookie


class MalformedOptionError(DecodeError):
    '''
    An option cannot be decoded, or overflows the buffer
    '''

    def __init__(self, code: int, reason: str):
        super().__init__(f'Malformed DHCP option #{code}: {reason}')
        self.code = code


class MissingOptionError(DHCPError, LookupError):
    '''
    Missing dhcp option
    '''

    def __init__(self, option: Union[int, str, Option]):
        if isinstance(option, str):
            option = Option[option.upper()]
        if not isinstance(option, Option):
            option = Option(option)
        super().__init__(
            f'Missing DHCP option #{option.value}: {option.name.lower()}'
        )
        self.option = option


class TransportError(DHCPError, OSError):
    '''
    The socket cannot be opened, or sending/receiving failed.

    Fatal for the client loop of the interface.
    '''

    pass


class RetryExhausted(DHCPError):
    '''
    No answer after the maximum number of transmissions
    '''

    def __init__(self, attempts: int):
        super().__init__(f'No answer after {attempts} attempts')
        self.attempts = attempts
