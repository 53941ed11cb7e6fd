import errno
import logging
import select
import socket
import threading

from errors import ConnectionClosed, HeaderTooLarge

BUFFER_SIZE = 65536

logger = logging.getLogger('muxproxy.connection')

# getaddrinfo failures carry EAI_* codes instead of errno values
_EAI_NAMES = {getattr(socket, name): name for name in dir(socket) if name.startswith('EAI_')}


class Connection:
    """
    A TCP stream with a replay buffer in front of the socket.

    Bytes obtained through peek() stay in the buffer and are handed out again
    by the next recv()/read_*() call, so protocol sniffing never loses or
    duplicates data.
    """

    def __init__(self, sock, addr=None):
        self.sock = sock
        self.addr = addr
        self._buffer = bytearray()
        self._closed = False
        # set once a reset or socket error has been seen; SO_ERROR clears on read
        self._broken = False
        self._lock = threading.Lock()

    def __repr__(self):
        return f'<Connection {self.addr}>'

    @property
    def closed(self):
        return self._closed

    def settimeout(self, timeout):
        self.sock.settimeout(timeout)

    def _fill(self, bufsize=BUFFER_SIZE) -> bool:
        chunk = self.sock.recv(bufsize)
        if not chunk:
            return False
        self._buffer += chunk
        return True

    def peek(self, n=1) -> bytes:
        """读取但不消费最多 n 个字节；对端未发送任何数据就关闭时返回 b''"""
        while len(self._buffer) < n:
            if not self._fill(n - len(self._buffer)):
                break
        return bytes(self._buffer[:n])

    def recv(self, bufsize=BUFFER_SIZE) -> bytes:
        if self._buffer:
            data = bytes(self._buffer[:bufsize])
            del self._buffer[:bufsize]
            return data
        return self.sock.recv(bufsize)

    def read_exact(self, n) -> bytes:
        while len(self._buffer) < n:
            if not self._fill():
                raise ConnectionClosed(n, len(self._buffer))
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    def read_until(self, delim: bytes, limit=BUFFER_SIZE) -> bytes:
        """读取直到 delim（包含 delim）；超过 limit 抛出 HeaderTooLarge"""
        start = 0
        while True:
            idx = self._buffer.find(delim, start)
            if idx != -1:
                end = idx + len(delim)
                if end > limit:
                    raise HeaderTooLarge(f'{end} bytes before {delim!r}, limit is {limit}')
                data = bytes(self._buffer[:end])
                del self._buffer[:end]
                return data
            if len(self._buffer) > limit:
                raise HeaderTooLarge(f'no {delim!r} within {limit} bytes')
            # the delimiter may straddle two reads
            start = max(0, len(self._buffer) - len(delim) + 1)
            if not self._fill():
                raise ConnectionClosed(None, len(self._buffer))

    def take_buffered(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def sendall(self, data):
        self.sock.sendall(data)

    def send_reply(self, data) -> bool:
        """向客户端发送错误/状态回复；连接已失效时放弃并返回 False"""
        if not self.writable:
            return False
        try:
            self.sock.sendall(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f'Reply to {self.addr} dropped: {e}')
            self._broken = True
            return False
        return True

    @property
    def writable(self) -> bool:
        """检查连接是否已经失效（不阻塞）：本端已关闭、收到 RST 或存在挂起的套接字错误"""
        if self._closed or self._broken:
            return False
        try:
            if self.sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR):
                self._broken = True
                return False
            readable, _, _ = select.select([self.sock], [], [], 0)
        except (OSError, ValueError):
            return False
        if not readable:
            return True
        try:
            # pending data or a plain FIN (half-close) still accept a reply
            self.sock.recv(1, socket.MSG_PEEK | socket.MSG_DONTWAIT)
        except (BlockingIOError, InterruptedError):
            return True
        except OSError:
            self._broken = True
            return False
        return True

    def shutdown(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        self._discard_pending()
        try:
            self.sock.close()
        except OSError:
            pass

    def _discard_pending(self):
        # unread bytes left in the kernel buffer turn close() into a RST,
        # which can destroy a reply the peer has not read yet
        try:
            self.sock.setblocking(False)
            for _ in range(16):
                if not self.sock.recv(BUFFER_SIZE):
                    break
        except OSError:
            pass


def open_connection(host, port, timeout=10.0) -> Connection:
    """建立到目标的 TCP 连接；连接超时仅作用于握手，之后不设空闲超时"""
    sock = socket.create_connection((host, port), timeout=timeout)
    sock.settimeout(None)
    return Connection(sock, (host, port))


def error_code(exc) -> str:
    """把连接异常转换成简短的错误码，例如 ECONNREFUSED / ETIMEDOUT"""
    if isinstance(exc, socket.gaierror):
        return _EAI_NAMES.get(exc.errno, 'EAI_FAIL')
    code = getattr(exc, 'errno', None)
    if code in errno.errorcode:
        return errno.errorcode[code]
    if isinstance(exc, socket.timeout):
        return 'ETIMEDOUT'
    return type(exc).__name__


def relay(client: Connection, remote: Connection, bufsize=BUFFER_SIZE):
    """双向转发数据，任意一侧结束或出错时同时关闭两侧；返回 (上行字节数, 下行字节数)"""
    counts = [0, 0]

    def forward(src, dst, index):
        try:
            while True:
                data = src.recv(bufsize)
                if not data:
                    break
                dst.sendall(data)
                counts[index] += len(data)
        except OSError as e:
            logger.debug(f'Relay {src.addr} -> {dst.addr} aborted: {e}')
        finally:
            # wakes the opposite direction, which is blocked in recv()
            client.shutdown()
            remote.shutdown()

    t = threading.Thread(target=forward, args=(remote, client, 1), daemon=True)
    t.start()
    forward(client, remote, 0)
    t.join()
    return counts[0], counts[1]
