import logging
from urllib.parse import urlsplit

from connection import Connection, open_connection, relay, error_code
from errors import ProtocolError

BAD_REQUEST = b'HTTP/1.1 400 Bad Request\r\n\r\n'
BAD_GATEWAY = b'HTTP/1.1 502 Bad Gateway\r\n\r\n'

DEFAULT_AGENT = 'muxproxy'

logger = logging.getLogger('muxproxy.tunnel')


def connection_established(agent_name=DEFAULT_AGENT) -> bytes:
    return (
        'HTTP/1.1 200 Connection Established\r\n'
        f'Proxy-agent: {agent_name}\r\n'
        '\r\n'
    ).encode('iso-8859-1')


def parse_connect_target(target):
    """解析 CONNECT 的 host:port（支持 [v6]:port 写法），无法解析时抛出 ProtocolError"""
    try:
        parsed = urlsplit(f'//{target}')
        host = parsed.hostname
        port = parsed.port
    except ValueError as e:
        raise ProtocolError(f'invalid CONNECT target {target!r}: {e}')
    if not host or not port or parsed.path or parsed.query:
        raise ProtocolError(f'invalid CONNECT target {target!r}')
    return host, port


class ConnectTunnelHandler:
    def __init__(self, conn: Connection, connect_timeout=10.0, agent_name=DEFAULT_AGENT):
        self.conn = conn
        self.connect_timeout = connect_timeout
        self.agent_name = agent_name

    def handle(self, request):
        """处理 HTTPS CONNECT：连接目标后回复 200，然后成为纯字节隧道"""
        try:
            host, port = parse_connect_target(request.target)
        except ProtocolError as e:
            logger.warning(str(e))
            self.conn.send_reply(BAD_REQUEST)
            return

        try:
            remote = open_connection(host, port, timeout=self.connect_timeout)
        except OSError as e:
            logger.warning(f'CONNECT {host}:{port} failed: {error_code(e)} {e}')
            self.conn.send_reply(BAD_GATEWAY)
            return

        try:
            self.conn.sendall(connection_established(self.agent_name))
            # bytes the client pipelined after the request head go out first
            head = self.conn.take_buffered()
            if head:
                remote.sendall(head)
            self.conn.settimeout(None)
            sent, received = relay(self.conn, remote)
            logger.debug(f'Tunnel {host}:{port} closed ({sent} bytes up, {received} bytes down)')
        finally:
            remote.close()
