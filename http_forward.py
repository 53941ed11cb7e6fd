import logging
import re
import threading
from urllib.parse import urlsplit

from connect_tunnel import ConnectTunnelHandler, DEFAULT_AGENT
from connection import BUFFER_SIZE, Connection, open_connection, relay, error_code
from errors import ConnectionClosed, HeaderTooLarge, ProtocolError, ProxyError

MAX_HEAD_SIZE = 65536
MAX_LINE_SIZE = 8192

SELF_ID_BODY = b'Proxy is running. Use this address as your proxy server.'

logger = logging.getLogger('muxproxy.http')

_LINE_SPLIT = re.compile(r'\r?\n')


def parse_head(head: bytes):
    """把请求/响应头拆成首行、原始头行以及 (name, value) 列表"""
    text = head.decode('iso-8859-1')
    lines = _LINE_SPLIT.split(text)
    first_line = lines[0]
    raw_lines = []
    headers = []
    for line in lines[1:]:
        if not line:
            break
        name, sep, value = line.partition(':')
        if not sep or not name.strip():
            raise ProtocolError(f'malformed header line {line!r}')
        raw_lines.append(line)
        headers.append((name.strip(), value.strip()))
    return first_line, raw_lines, headers


class Message:
    """Shared header access for requests and responses."""

    version = 'HTTP/1.1'
    headers = ()

    def header(self, name, default=None):
        name = name.lower()
        for k, v in self.headers:
            if k.lower() == name:
                return v
        return default

    def get_all(self, name):
        name = name.lower()
        return [v for k, v in self.headers if k.lower() == name]

    def connection_tokens(self, *names):
        tokens = set()
        for n in names or ('Connection',):
            for value in self.get_all(n):
                tokens.update(t.strip().lower() for t in value.split(','))
        return tokens

    def is_chunked(self):
        te = ','.join(self.get_all('Transfer-Encoding')).lower()
        return 'chunked' in te

    def content_length(self):
        values = self.get_all('Content-Length')
        if not values:
            return None
        lengths = {v.strip() for v in values}
        if len(lengths) != 1:
            raise ProtocolError(f'conflicting Content-Length values {values}')
        value = lengths.pop()
        if not value.isdigit():
            raise ProtocolError(f'invalid Content-Length {value!r}')
        return int(value)


class ForwardRequest(Message):
    def __init__(self, method, target, version, header_lines=None, headers=None):
        self.method = method
        self.target = target
        self.version = version
        self.header_lines = header_lines or []
        self.headers = headers or []
        self.host = None
        self.port = 80
        self.path = '/'

    @classmethod
    def parse(cls, head: bytes):
        first_line, raw_lines, headers = parse_head(head)
        parts = first_line.split()
        if len(parts) != 3 or not parts[2].startswith('HTTP/'):
            raise ProtocolError(f'malformed request line {first_line!r}')
        method, target, version = parts
        req = cls(method, target, version, raw_lines, headers)
        if method.upper() == 'CONNECT':
            return req

        try:
            parsed = urlsplit(target)
            if parsed.scheme and parsed.hostname:
                req.host = parsed.hostname
                req.port = parsed.port or 80
                req.path = parsed.path or '/'
                if parsed.query:
                    req.path += '?' + parsed.query
        except ValueError as e:
            raise ProtocolError(f'invalid request target {target!r}: {e}')
        return req

    @property
    def is_connect(self):
        return self.method.upper() == 'CONNECT'

    @property
    def keep_alive(self):
        tokens = self.connection_tokens('Connection', 'Proxy-Connection')
        if 'close' in tokens:
            return False
        if self.version == 'HTTP/1.1':
            return True
        return 'keep-alive' in tokens

    def forward_head(self) -> bytes:
        """重写首行为相对路径，其余头部原样转发"""
        lines = [f'{self.method} {self.path} {self.version}'] + self.header_lines
        return ('\r\n'.join(lines) + '\r\n\r\n').encode('iso-8859-1')


class ForwardResponse(Message):
    def __init__(self, version, status, reason, headers=None):
        self.version = version
        self.status = status
        self.reason = reason
        self.headers = headers or []

    @classmethod
    def parse(cls, head: bytes):
        first_line, _, headers = parse_head(head)
        parts = first_line.split(None, 2)
        if len(parts) < 2 or not parts[0].startswith('HTTP/') or not parts[1].isdigit():
            raise ProtocolError(f'malformed status line {first_line!r}')
        reason = parts[2] if len(parts) == 3 else ''
        return cls(parts[0], int(parts[1]), reason, headers)

    @property
    def interim(self):
        return 100 <= self.status < 200 and self.status != 101

    def has_body(self, method):
        if method.upper() == 'HEAD':
            return False
        return not (100 <= self.status < 200 or self.status in (204, 304))

    def keep_alive(self, delimited):
        if not delimited or 'close' in self.connection_tokens():
            return False
        if self.version == 'HTTP/1.1':
            return True
        return 'keep-alive' in self.connection_tokens()


def copy_length(src: Connection, dst, length):
    remaining = length
    while remaining > 0:
        data = src.recv(min(BUFFER_SIZE, remaining))
        if not data:
            raise ConnectionClosed(length, length - remaining)
        dst.sendall(data)
        remaining -= len(data)


def copy_chunked(src: Connection, dst):
    """逐块转发 chunked 编码的消息体（保留原始编码）"""
    while True:
        size_line = src.read_until(b'\r\n', MAX_LINE_SIZE)
        try:
            size = int(size_line.split(b';')[0].strip(), 16)
        except ValueError:
            raise ProtocolError(f'invalid chunk size line {size_line!r}')
        dst.sendall(size_line)

        if size == 0:
            # trailers end with an empty line
            while True:
                line = src.read_until(b'\r\n', MAX_LINE_SIZE)
                dst.sendall(line)
                if line == b'\r\n':
                    return
        # chunk data + CRLF
        copy_length(src, dst, size + 2)


def copy_until_close(src: Connection, dst):
    while True:
        data = src.recv(BUFFER_SIZE)
        if not data:
            return
        dst.sendall(data)


class BodyUploader(threading.Thread):
    """Streams the request body to the origin while the response is being read."""

    def __init__(self, client: Connection, origin: Connection, request: ForwardRequest):
        super().__init__(daemon=True)
        self.client = client
        self.origin = origin
        self.request = request
        self.error = None

    def run(self):
        try:
            if self.request.is_chunked():
                copy_chunked(self.client, self.origin)
            else:
                copy_length(self.client, self.origin, self.request.content_length() or 0)
        except (OSError, ProxyError) as e:
            self.error = e
            logger.debug(f'Request body upload to {self.origin.addr} aborted: {e}')
            # unblocks the response reader
            self.origin.shutdown()


class HttpForwardHandler:
    def __init__(self, conn: Connection, connect_timeout=10.0, agent_name=DEFAULT_AGENT,
                 handshake_timeout=None):
        self.conn = conn
        self.connect_timeout = connect_timeout
        self.agent_name = agent_name
        self.handshake_timeout = handshake_timeout

    def handle(self):
        """处理 HTTP 连接：CONNECT 交给隧道处理器，其余按绝对 URI 转发（支持 keep-alive）"""
        first = True
        while True:
            self.conn.settimeout(self.handshake_timeout)
            try:
                head = self.conn.read_until(b'\r\n\r\n', MAX_HEAD_SIZE)
            except HeaderTooLarge as e:
                logger.warning(f'Request head from {self.conn.addr} too large: {e}')
                self.send_simple(400, 'Bad Request', b'Request header too large')
                return
            except ConnectionClosed:
                if first:
                    logger.debug(f'Connection from {self.conn.addr} closed before a full request head')
                return

            first = False
            head = head.lstrip(b'\r\n')
            if not head:
                # stray CRLF between keep-alive requests
                continue

            try:
                request = ForwardRequest.parse(head)
            except ProtocolError as e:
                logger.warning(f'Bad request from {self.conn.addr}: {e}')
                self.send_simple(400, 'Bad Request', b'Bad Request')
                return

            logger.info(f'Received request: {request.method} {request.target}')

            if request.is_connect:
                ConnectTunnelHandler(self.conn, connect_timeout=self.connect_timeout,
                                     agent_name=self.agent_name).handle(request)
                return

            if not request.host:
                self.send_self_identification()
                return

            self.conn.settimeout(None)
            if not self.forward(request):
                return

    def send_simple(self, status, reason, body=b''):
        head = (
            f'HTTP/1.1 {status} {reason}\r\n'
            'Content-Type: text/plain\r\n'
            f'Content-Length: {len(body)}\r\n'
            'Connection: close\r\n'
            '\r\n'
        ).encode('iso-8859-1')
        if not self.conn.send_reply(head + body):
            logger.debug(f'Client {self.conn.addr} already gone, dropped {status} response')

    def send_self_identification(self):
        self.send_simple(200, 'OK', SELF_ID_BODY)

    def send_bad_gateway(self, code):
        self.send_simple(502, 'Bad Gateway', f'Bad Gateway: {code}'.encode('ascii', 'replace'))

    def forward(self, request: ForwardRequest) -> bool:
        """转发一个请求并把响应原样返回；返回 True 表示客户端连接可以继续复用"""
        try:
            # validate body framing before touching the origin
            request.content_length()
        except ProtocolError as e:
            logger.warning(f'Bad request from {self.conn.addr}: {e}')
            self.send_simple(400, 'Bad Request', b'Bad Request')
            return False

        try:
            origin = open_connection(request.host, request.port, timeout=self.connect_timeout)
        except OSError as e:
            code = error_code(e)
            logger.warning(f'Forward to {request.host}:{request.port} failed: {code} {e}')
            self.send_bad_gateway(code)
            return False

        headers_sent = False
        keep_alive = False
        uploader = None
        try:
            origin.sendall(request.forward_head())
            if request.is_chunked() or request.content_length():
                uploader = BodyUploader(self.conn, origin, request)
                uploader.start()

            while True:
                head = origin.read_until(b'\r\n\r\n', MAX_HEAD_SIZE)
                response = ForwardResponse.parse(head)
                if not response.interim:
                    break
                # 100 Continue and friends go straight through
                self.conn.sendall(head)

            self.conn.sendall(head)
            headers_sent = True
            logger.debug(f'{request.method} {request.target} -> {response.status}')

            if response.status == 101:
                if uploader:
                    uploader.join()
                relay(self.conn, origin)
                return False

            if not response.has_body(request.method):
                delimited = True
            elif response.is_chunked():
                copy_chunked(origin, self.conn)
                delimited = True
            elif response.content_length() is not None:
                copy_length(origin, self.conn, response.content_length())
                delimited = True
            else:
                copy_until_close(origin, self.conn)
                delimited = False

            keep_alive = request.keep_alive and response.keep_alive(delimited)
        except (OSError, ProxyError) as e:
            if headers_sent:
                logger.debug(f'Relay of {request.target} aborted after headers: {e}')
            elif uploader is not None and isinstance(uploader.error, ProtocolError):
                # the client's own body framing broke the exchange
                logger.warning(f'Bad request body from {self.conn.addr}: {uploader.error}')
                self.send_simple(400, 'Bad Request', b'Bad Request')
            else:
                code = error_code(e) if isinstance(e, OSError) else 'EPROTO'
                logger.warning(f'Forward to {request.host}:{request.port} failed: {code} {e}')
                self.send_bad_gateway(code)
            keep_alive = False
        finally:
            if uploader is not None:
                uploader.join(timeout=1.0)
                if uploader.is_alive():
                    # the origin answered before the body was fully sent;
                    # the client stream can no longer be resynchronised
                    origin.shutdown()
                    self.conn.shutdown()
                    keep_alive = False
                    uploader.join()
                if uploader.error is not None:
                    keep_alive = False
            origin.close()

        return keep_alive
