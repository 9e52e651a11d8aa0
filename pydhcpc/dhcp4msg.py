'''
IPv4 DHCP messages
==================

A `DHCPMessage` is an immutable BOOTP/DHCP packet (RFC 2131).

BOOTP fields
------------

The fixed part of the packet is described by the `FIELDS` table, as
`(name, struct format)` pairs, in wire order. Addresses are stored as
dotted quad strings, the client hardware address as a colon separated
MAC string, and `sname` / `file` as bytes without the trailing zeros.

DHCP options
------------

Options are stored as they arrive on the wire: an ordered tuple of
`(code, raw bytes)` pairs. A code appears at most once; unknown codes
are kept as opaque bytes, so that forward-compatible servers don't
break the client.

Typed values are obtained with `DHCPMessage.get()`, which decodes the
raw bytes according to the option format registered in `OPTIONS`.
Formats are described with a `Policy`, as for the BOOTP fields::

    'ip4addr': Policy(format='4s',
                      encode=lambda x: inet_pton(AF_INET, x),
                      decode=lambda x: inet_ntop(AF_INET, x))

The `format` is a `struct` format, or `string` for variable length
payloads. The `encode` filter turns a user value into something that
can be packed with `format`, the `decode` filter does the opposite.

Example::

    msg = DHCPMessage.build(
        op=bootp.MessageType.BOOTREQUEST,
        xid=0x12345678,
        chaddr='16:f4:cb:71:09:a1',
        options={
            Option.MESSAGE_TYPE: MessageType.DISCOVER,
            Option.PARAMETER_LIST: [Option.SUBNET_MASK, Option.ROUTER],
        },
    )
    data = msg.encode()
    assert DHCPMessage.decode(data) == msg

'''

import dataclasses
import struct
from array import array
from socket import AF_INET, inet_ntop, inet_pton
from typing import (
    Any,
    Callable,
    Mapping,
    NamedTuple,
    Optional,
    TypedDict,
    Union,
)

from pydhcpc.enums import bootp
from pydhcpc.enums.dhcp import MessageType, Option
from pydhcpc.exceptions import (
    MagicCookieMismatchError,
    MalformedOptionError,
    MissingOptionError,
    TruncatedPacketError,
)

MAGIC_COOKIE = b'c\x82Sc'
# BOOTP header, without the magic cookie
HEADER_SIZE = 236
# RFC 1542: relays may drop anything shorter
MIN_PACKET_SIZE = 300

FIELDS = (
    ('op', 'B'),
    ('htype', 'B'),
    ('hlen', 'B'),
    ('hops', 'B'),
    ('xid', 'I'),
    ('secs', 'H'),
    ('flags', 'H'),
    ('ciaddr', '4s'),
    ('yiaddr', '4s'),
    ('siaddr', '4s'),
    ('giaddr', '4s'),
    ('chaddr', '16s'),
    ('sname', '64s'),
    ('file', '128s'),
)
HEADER = struct.Struct('!' + ''.join(fmt for _, fmt in FIELDS))
assert HEADER.size == HEADER_SIZE

RawOptions = tuple[tuple[int, bytes], ...]


def _identity(value: Any) -> Any:
    return value


class Policy(NamedTuple):
    '''How to pack & unpack the value of an option.'''

    format: str
    encode: Callable[[Any], Any] = _identity
    decode: Callable[[Any], Any] = _identity


class ClientId(TypedDict):
    '''A dict with 'type' and 'key' keys.

    The types stores the client id type, and the key stores the value.
    See RFC for their meaning.
    '''

    type: int
    key: Union[bytes, str]


def encode_mac(value: str) -> bytes:
    ''''aa:bb:cc:dd:ee:ff' -> 6 bytes'''
    if not value:
        return b''
    return bytes(int(i, 16) for i in value.split(':'))


def decode_mac(value: bytes) -> str:
    '''6 bytes -> 'aa:bb:cc:dd:ee:ff' '''
    return ':'.join(f'{i:02x}' for i in value)


def _decode_client_id(value: bytes) -> ClientId:
    '''Decode a raw client id option into a dict with type and key.

    If the type is 1, the key is decoded as a mac address,
    otherwise it's just the raw bytes.
    '''
    if not value:
        raise ValueError('empty client id')
    type_ = value[0]
    key: Union[bytes, str] = value[1:]
    if type_ == bootp.HardwareType.ETHERNET:
        assert isinstance(key, bytes)
        key = decode_mac(key)
    return ClientId(type=type_, key=key)


def _encode_client_id(value: ClientId) -> bytes:
    '''Encode a client_id dict into bytes.'''
    type_ = value['type']
    key = value['key']
    if type_ == bootp.HardwareType.ETHERNET:
        assert isinstance(key, str), 'client_id must be a mac str when type=1'
        key = encode_mac(key)
    assert isinstance(key, bytes), 'client_id must be bytes'
    return struct.pack('B', type_) + key


def _decode_ip4list(value: bytes) -> list[str]:
    if len(value) % 4:
        raise ValueError(f'{len(value)} bytes is not a list of IPv4 addrs')
    return [
        inet_ntop(AF_INET, value[i : i + 4]) for i in range(0, len(value), 4)
    ]


def _encode_string(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        return value.encode('utf-8')
    return value


def _decode_string(value: bytes) -> str:
    # some servers terminate strings with NULs
    return value.rstrip(b'\x00').decode('utf-8', errors='replace')


FORMATS: dict[str, Policy] = {
    'ip4addr': Policy(
        format='4s',
        encode=lambda x: inet_pton(AF_INET, x),
        decode=lambda x: inet_ntop(AF_INET, x),
    ),
    'ip4list': Policy(
        format='string',
        encode=lambda x: b''.join([inet_pton(AF_INET, i) for i in x]),
        decode=_decode_ip4list,
    ),
    'uint8': Policy(format='B'),
    'be16': Policy(format='>H'),
    'be32': Policy(format='>I'),
    'sbe32': Policy(format='>i'),
    'bool': Policy(format='B', encode=int, decode=bool),
    'string': Policy(
        format='string', encode=_encode_string, decode=_decode_string
    ),
    'array8': Policy(
        format='string',
        encode=lambda x: array('B', x).tobytes(),
        decode=lambda x: array('B', x).tolist(),
    ),
    'client_id': Policy(
        format='string', encode=_encode_client_id, decode=_decode_client_id
    ),
    'message_type': Policy(format='B', decode=MessageType),
}

#
# https://www.ietf.org/rfc/rfc2132.txt
#
OPTIONS: dict[int, str] = {
    Option.SUBNET_MASK: 'ip4addr',
    Option.TIME_OFFSET: 'sbe32',
    Option.ROUTER: 'ip4list',
    Option.TIME_SERVER: 'ip4list',
    Option.NAME_SERVER: 'ip4list',
    Option.LOG_SERVER: 'ip4list',
    Option.HOST_NAME: 'string',
    Option.DOMAIN_NAME: 'string',
    Option.ROOT_PATH: 'string',
    Option.IP_FORWARDING: 'bool',
    Option.DEFAULT_TTL: 'uint8',
    Option.INTERFACE_MTU: 'be16',
    Option.BROADCAST_ADDRESS: 'ip4addr',
    Option.NIS_DOMAIN: 'string',
    Option.NTP_SERVERS: 'ip4list',
    Option.REQUESTED_IP: 'ip4addr',
    # 0xFFFFFFFF means infinity
    Option.LEASE_TIME: 'be32',
    # 1: options in file, 2: options in sname, 3: both
    Option.OPTION_OVERLOAD: 'uint8',
    Option.MESSAGE_TYPE: 'message_type',
    Option.SERVER_ID: 'ip4addr',
    Option.PARAMETER_LIST: 'array8',
    Option.MESSAGE: 'string',
    # minimum value: 576 bytes
    Option.MAX_MSG_SIZE: 'be16',
    Option.RENEWAL_TIME: 'be32',
    Option.REBINDING_TIME: 'be32',
    Option.VENDOR_ID: 'string',
    Option.CLIENT_ID: 'client_id',
    Option.TFTP_SERVER_NAME: 'string',
    Option.BOOTFILE_NAME: 'string',
}


def encode_option_value(code: int, value: Any) -> bytes:
    '''Encode a typed value for the option `code`.

    Values for options without a registered format must be bytes.
    '''
    fmt = OPTIONS.get(code)
    if fmt is None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(
                f'option #{code} has no format, value must be bytes'
            )
        return bytes(value)
    policy = FORMATS[fmt]
    encoded = policy.encode(value)
    if policy.format == 'string':
        return bytes(encoded)
    return struct.pack(policy.format, encoded)


def decode_option_value(code: int, raw: bytes) -> Any:
    '''Decode the raw bytes of option `code`.

    Unknown options are returned as is. Raises `MalformedOptionError`
    when the payload does not match the option format.
    '''
    fmt = OPTIONS.get(code)
    if fmt is None:
        return raw
    policy = FORMATS[fmt]
    try:
        if policy.format == 'string':
            return policy.decode(raw)
        (value,) = struct.unpack(policy.format, raw)
        return policy.decode(value)
    except (struct.error, ValueError) as err:
        raise MalformedOptionError(code, f'cannot decode as {fmt}: {err}')


def _pack_options(options: RawOptions) -> bytes:
    buf = b''
    for code, value in options:
        # RFC 3396: long options are split in consecutive chunks
        chunks = [value[i : i + 255] for i in range(0, len(value), 255)]
        for chunk in chunks or [b'']:
            buf += struct.pack('BB', code, len(chunk)) + chunk
    return buf + struct.pack('B', Option.END)


def _unpack_options(data: bytes, offset: int) -> RawOptions:
    options: dict[int, bytes] = {}
    while offset < len(data):
        code = data[offset]
        if code == Option.PAD:
            offset += 1
            continue
        if code == Option.END:
            break
        if offset + 1 >= len(data):
            raise MalformedOptionError(code, 'missing length byte')
        length = data[offset + 1]
        start = offset + 2
        if start + length > len(data):
            raise MalformedOptionError(
                code,
                f'length {length} exceeds the '
                f'{len(data) - start} remaining bytes',
            )
        # RFC 3396: a repeated code continues the previous value
        options[code] = options.get(code, b'') + data[start : start + length]
        offset = start + length
    return tuple(options.items())


@dataclasses.dataclass(frozen=True)
class DHCPMessage:
    '''An immutable IPv4 DHCP message.

    `hlen` defaults to the length of `chaddr`, which is kept in lowercase.
    '''

    op: int = bootp.MessageType.BOOTREQUEST
    htype: int = bootp.HardwareType.ETHERNET
    hlen: Optional[int] = None
    hops: int = 0
    xid: int = 0
    secs: int = 0
    flags: int = bootp.Flag.UNICAST
    ciaddr: str = '0.0.0.0'
    yiaddr: str = '0.0.0.0'
    siaddr: str = '0.0.0.0'
    giaddr: str = '0.0.0.0'
    chaddr: str = '00:00:00:00:00:00'
    sname: bytes = b''
    file: bytes = b''
    options: RawOptions = ()

    def __post_init__(self) -> None:
        options = tuple(
            (int(code), bytes(value)) for code, value in self.options
        )
        seen: set[int] = set()
        for code, _ in options:
            if not 0 < code < Option.END:
                raise ValueError(f'invalid option code {code}')
            if code in seen:
                raise ValueError(f'duplicate option #{code}')
            seen.add(code)
        object.__setattr__(self, 'options', options)
        if not 0 <= self.xid <= 0xFFFFFFFF:
            raise ValueError(f'xid {self.xid:#x} does not fit in 32 bits')
        object.__setattr__(self, 'chaddr', self.chaddr.lower())
        chaddr_len = len(encode_mac(self.chaddr))
        if chaddr_len > 16:
            raise ValueError(f'chaddr {self.chaddr!r} is too long')
        if self.hlen is None:
            object.__setattr__(self, 'hlen', chaddr_len)
        elif self.hlen != chaddr_len:
            raise ValueError(
                f'hlen {self.hlen} does not match chaddr {self.chaddr!r}'
            )
        for name, size in (('sname', 64), ('file', 128)):
            value = getattr(self, name)
            if len(value) > size or value.endswith(b'\x00'):
                raise ValueError(f'invalid {name} {value!r}')

    @classmethod
    def build(
        cls, options: Optional[Mapping[int, Any]] = None, **fields: Any
    ) -> 'DHCPMessage':
        '''Build a message from typed option values.

        The message type, if any, is always the first option.
        '''
        options = dict(options or {})
        raw = []
        if Option.MESSAGE_TYPE in options:
            raw.append(
                (
                    Option.MESSAGE_TYPE,
                    encode_option_value(
                        Option.MESSAGE_TYPE, options.pop(Option.MESSAGE_TYPE)
                    ),
                )
            )
        for code, value in options.items():
            if value is None:
                continue
            raw.append((code, encode_option_value(code, value)))
        return cls(options=tuple(raw), **fields)

    def replace(self, **changes: Any) -> 'DHCPMessage':
        '''A copy of this message with some BOOTP fields changed.'''
        if 'chaddr' in changes:
            changes.setdefault('hlen', None)
        return dataclasses.replace(self, **changes)

    # options

    def __contains__(self, code: int) -> bool:
        return any(code == i for i, _ in self.options)

    def raw(self, code: int) -> Optional[bytes]:
        '''The raw bytes of an option, None if absent.'''
        for i, value in self.options:
            if i == code:
                return value
        return None

    def get(self, code: int, default: Any = None) -> Any:
        '''The decoded value of an option, or `default` if absent.'''
        raw = self.raw(code)
        if raw is None:
            return default
        return decode_option_value(code, raw)

    def require(self, code: int) -> Any:
        '''Like `get()`, but raise `MissingOptionError` if absent.'''
        raw = self.raw(code)
        if raw is None:
            raise MissingOptionError(code)
        return decode_option_value(code, raw)

    def decoded_options(self) -> dict[str, Any]:
        '''All options decoded, keyed by name. Mostly useful for logging.'''
        ret = {}
        for code, raw in self.options:
            try:
                name = Option(code).name.lower()
            except ValueError:
                name = f'option{code}'
            try:
                ret[name] = decode_option_value(code, raw)
            except MalformedOptionError:
                ret[name] = raw
        return ret

    @property
    def message_type(self) -> Optional[MessageType]:
        '''The DHCP message type (DISCOVER, REQUEST, ACK...)'''
        try:
            return self.get(Option.MESSAGE_TYPE)
        except MalformedOptionError:
            return None

    # wire format

    def encode(self) -> bytes:
        '''Pack the message into bytes ready to be sent.'''
        data = HEADER.pack(
            self.op,
            self.htype,
            self.hlen,
            self.hops,
            self.xid,
            self.secs,
            self.flags,
            inet_pton(AF_INET, self.ciaddr),
            inet_pton(AF_INET, self.yiaddr),
            inet_pton(AF_INET, self.siaddr),
            inet_pton(AF_INET, self.giaddr),
            encode_mac(self.chaddr),
            self.sname,
            self.file,
        )
        data += MAGIC_COOKIE + _pack_options(self.options)
        if len(data) < MIN_PACKET_SIZE:
            data += bytes(MIN_PACKET_SIZE - len(data))
        return data

    @classmethod
    def decode(cls, data: bytes) -> 'DHCPMessage':
        '''Unpack a message from bytes.

        Raises a subclass of `DecodeError` if the data is not valid DHCP.
        '''
        if len(data) < HEADER_SIZE:
            raise TruncatedPacketError(len(data), HEADER_SIZE)
        cookie = data[HEADER_SIZE : HEADER_SIZE + len(MAGIC_COOKIE)]
        if cookie != MAGIC_COOKIE:
            raise MagicCookieMismatchError(cookie)
        fields = dict(
            zip((name for name, _ in FIELDS), HEADER.unpack_from(data))
        )
        for name in ('ciaddr', 'yiaddr', 'siaddr', 'giaddr'):
            fields[name] = inet_ntop(AF_INET, fields[name])
        fields['hlen'] = min(fields['hlen'], 16)
        fields['chaddr'] = decode_mac(fields['chaddr'][: fields['hlen']])
        fields['sname'] = fields['sname'].rstrip(b'\x00')
        fields['file'] = fields['file'].rstrip(b'\x00')
        options = _unpack_options(data, HEADER_SIZE + len(MAGIC_COOKIE))
        return cls(options=options, **fields)

    def __str__(self) -> str:
        msg_type = self.message_type
        name = msg_type.name if msg_type else 'BOOTP'
        return f'{name} (xid {self.xid:#010x})'


def encode(message: DHCPMessage) -> bytes:
    '''Shortcut for `message.encode()`.'''
    return message.encode()


def decode(data: bytes) -> DHCPMessage:
    '''Shortcut for `DHCPMessage.decode(data)`.'''
    return DHCPMessage.decode(data)
