import logging
import socket
import struct

from connection import Connection, open_connection, relay, error_code
from errors import ConnectionClosed, ProtocolError

# Minimal SOCKS5 server side (RFC 1928): NO AUTH and CONNECT command only.

SOCKS_VERSION = 0x05

METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF

CMD_CONNECT = 0x01

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REP_SUCCEEDED = 0x00
REP_HOST_UNREACHABLE = 0x04
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

# session states
AWAITING_GREETING = 'AwaitingGreeting'
AWAITING_REQUEST = 'AwaitingRequest'
CONNECTING = 'Connecting'
RELAYING = 'Relaying'
CLOSED = 'Closed'

logger = logging.getLogger('muxproxy.socks5')


def build_reply(rep: int) -> bytes:
    """构造应答：BND.ADDR / BND.PORT 固定为 0.0.0.0:0，客户端一般不校验"""
    return struct.pack('!BBBBIH', SOCKS_VERSION, rep, 0x00, ATYP_IPV4, 0, 0)


class SocksSession:
    """Per-connection handshake state."""

    def __init__(self, client_addr=None):
        self.client_addr = client_addr
        self.state = AWAITING_GREETING
        self.methods = b''
        self.auth_method = None
        self.command = None
        self.atyp = None
        self.address = None
        self.port = None

    @property
    def destination(self):
        return f'{self.address}:{self.port}'


class Socks5Handler:
    def __init__(self, conn: Connection, connect_timeout=10.0, strict_auth=False):
        self.conn = conn
        self.connect_timeout = connect_timeout
        self.strict_auth = strict_auth
        self.session = SocksSession(conn.addr)

    def _close(self, reply=None):
        if reply is not None:
            self.conn.send_reply(reply)
        self.session.state = CLOSED

    def handle(self):
        """处理一个 SOCKS5 连接：握手 -> 请求 -> 建立连接 -> 转发"""
        try:
            if not self.greet():
                return
            if not self.read_request():
                return
        except (ConnectionClosed, ProtocolError) as e:
            logger.warning(f'SOCKS5 handshake from {self.conn.addr} failed: {e}')
            self._close()
            return
        self.connect_and_relay()

    def greet(self) -> bool:
        # [0x05, nMethods, methods...]
        ver, nmethods = self.conn.read_exact(2)
        if ver != SOCKS_VERSION:
            logger.debug('Not SOCKS5, closing connection')
            self._close()
            return False
        self.session.methods = self.conn.read_exact(nmethods)

        if self.strict_auth and METHOD_NO_AUTH not in self.session.methods:
            logger.warning(f'SOCKS5 client {self.conn.addr} did not offer NO AUTH: {list(self.session.methods)}')
            self._close(bytes([SOCKS_VERSION, METHOD_NO_ACCEPTABLE]))
            return False

        self.session.auth_method = METHOD_NO_AUTH
        self.conn.sendall(bytes([SOCKS_VERSION, METHOD_NO_AUTH]))
        self.session.state = AWAITING_REQUEST
        return True

    def read_request(self) -> bool:
        # [0x05, CMD, RSV, ATYP, DST.ADDR, DST.PORT]
        ver, cmd, rsv, atyp = self.conn.read_exact(4)
        if ver != SOCKS_VERSION or rsv != 0x00:
            logger.warning('Invalid SOCKS5 request')
            self._close()
            return False

        self.session.command = cmd
        if cmd != CMD_CONNECT:
            # BIND / UDP ASSOCIATE are not implemented
            logger.warning(f'SOCKS5 unsupported command: {cmd}')
            self._close(build_reply(REP_COMMAND_NOT_SUPPORTED))
            return False

        self.session.atyp = atyp
        if atyp == ATYP_IPV4:
            self.session.address = socket.inet_ntoa(self.conn.read_exact(4))
        elif atyp == ATYP_DOMAIN:
            length = self.conn.read_exact(1)[0]
            if length == 0:
                raise ProtocolError('empty domain name')
            try:
                self.session.address = self.conn.read_exact(length).decode('utf-8')
            except UnicodeDecodeError:
                raise ProtocolError('domain name is not valid UTF-8')
        elif atyp == ATYP_IPV6:
            logger.warning('SOCKS5 IPv6 destinations are not supported')
            self._close(build_reply(REP_ADDRESS_TYPE_NOT_SUPPORTED))
            return False
        else:
            logger.warning(f'SOCKS5 unknown address type: {atyp}')
            self._close()
            return False

        self.session.port = struct.unpack('!H', self.conn.read_exact(2))[0]
        self.session.state = CONNECTING
        return True

    def connect_and_relay(self):
        session = self.session
        logger.info(f'SOCKS5 Connect Request to {session.destination}')
        try:
            remote = open_connection(session.address, session.port, timeout=self.connect_timeout)
        except OSError as e:
            logger.warning(f'SOCKS5 Target Connection Error ({session.destination}): {error_code(e)} {e}')
            self._close(build_reply(REP_HOST_UNREACHABLE))
            return

        try:
            self.conn.sendall(build_reply(REP_SUCCEEDED))
            session.state = RELAYING
            self.conn.settimeout(None)
            sent, received = relay(self.conn, remote)
            logger.debug(f'SOCKS5 tunnel {session.destination} closed ({sent} bytes up, {received} bytes down)')
        finally:
            remote.close()
            session.state = CLOSED
