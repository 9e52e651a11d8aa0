from enum import IntEnum


class MessageType(IntEnum):
    '''DHCP message types, see RFC 2131 table 2.'''

    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7
    INFORM = 8


class Option(IntEnum):
    '''DHCP option codes, see RFC 2132.

    The client uses them in two ways:

    - in the `PARAMETER_LIST` it sends, to ask the server for values;
    - to look up values in the options of received messages.

    `PAD` and `END` only exist on the wire and never appear in a decoded
    message. Codes missing from this enum are still decoded, and kept
    as opaque bytes.
    '''

    PAD = 0
    SUBNET_MASK = 1
    TIME_OFFSET = 2
    ROUTER = 3
    TIME_SERVER = 4
    # this should be DOMAIN_NAME_SERVER but it's often used & shorted this way
    NAME_SERVER = 6
    LOG_SERVER = 7
    HOST_NAME = 12
    DOMAIN_NAME = 15
    ROOT_PATH = 17
    IP_FORWARDING = 19
    DEFAULT_TTL = 23
    INTERFACE_MTU = 26
    BROADCAST_ADDRESS = 28
    STATIC_ROUTE = 33
    NIS_DOMAIN = 40
    NTP_SERVERS = 42
    VENDOR_SPECIFIC_INFORMATION = 43
    REQUESTED_IP = 50
    LEASE_TIME = 51
    OPTION_OVERLOAD = 52
    MESSAGE_TYPE = 53
    SERVER_ID = 54
    PARAMETER_LIST = 55
    MESSAGE = 56
    MAX_MSG_SIZE = 57
    RENEWAL_TIME = 58
    REBINDING_TIME = 59
    VENDOR_ID = 60
    CLIENT_ID = 61
    TFTP_SERVER_NAME = 66
    BOOTFILE_NAME = 67
    RAPID_COMMIT = 80
    CLIENT_FQDN = 81
    RELAY_AGENT_INFORMATION = 82
    DOMAIN_SEARCH = 119
    CLASSLESS_STATIC_ROUTE = 121
    END = 255
