import socket
import threading
import logging

from connection import Connection
from connect_tunnel import DEFAULT_AGENT
from errors import ConnectionClosed, ProtocolError
from http_forward import HttpForwardHandler
from log_setup import CallbackHandler, ROOT_LOGGER, parse_level
from socks5_handler import Socks5Handler, SOCKS_VERSION

SOCKS5 = 'socks5'
HTTP = 'http'

logger = logging.getLogger('muxproxy.server')


def classify(first_byte: int) -> str:
    """根据首字节判断协议：0x05 为 SOCKS5，其余（HTTP 方法名的 ASCII 字母）为 HTTP"""
    return SOCKS5 if first_byte == SOCKS_VERSION else HTTP


class ProxyServer:
    def __init__(self, local_host='localhost', local_port=8080, log_callback=None, log_level=None,
                 connect_timeout: float = 10.0, handshake_timeout: float = 30.0,
                 agent_name=DEFAULT_AGENT, socks_strict_auth=False):
        self.local_host = local_host
        self.local_port = local_port
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.agent_name = agent_name
        self.socks_strict_auth = socks_strict_auth
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.running = False
        self.ready = threading.Event()

        # log_callback is a callable for host-application integration; records
        # from every muxproxy module are forwarded to it
        self._callback_handler = None
        self._logger = logging.getLogger(ROOT_LOGGER)
        if log_callback is not None:
            self._callback_handler = CallbackHandler(log_callback)
            self._callback_handler.setFormatter(logging.Formatter('%(levelname)s - %(message)s'))
            self._logger.addHandler(self._callback_handler)
        if log_level is not None:
            self._logger.setLevel(parse_level(log_level))

        # keep track of client threads so we can attempt to join them on stop
        self._client_threads = []

    @classmethod
    def from_config(cls, config, log_callback=None):
        return cls(local_host=config.host, local_port=config.port, log_callback=log_callback,
                   log_level=config.log_level, connect_timeout=config.connect_timeout,
                   handshake_timeout=config.handshake_timeout, agent_name=config.agent_name,
                   socks_strict_auth=config.socks_strict_auth)

    def start(self):
        """启动代理服务器（阻塞直到 stop() 被调用）"""
        try:
            self.socket.bind((self.local_host, self.local_port))
            self.socket.listen(128)
        except OSError as e:
            logger.error(f'Error starting proxy server on {self.local_host}:{self.local_port}: {e}')
            self.socket.close()
            raise

        # port 0 asks the OS for a free port
        self.local_port = self.socket.getsockname()[1]
        # poll so that stop() is noticed even where close() does not wake accept()
        self.socket.settimeout(0.5)
        self.running = True
        self.ready.set()
        logger.info(f'Proxy server started on {self.local_host}:{self.local_port} (HTTP, HTTPS CONNECT, SOCKS5)')

        while self.running:
            try:
                client_socket, addr = self.socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    # socket was closed via stop(); exit loop
                    break
                logger.error(f'Accept error: {e}')
                continue

            client_socket.settimeout(None)
            t = threading.Thread(target=self.handle_client, args=(client_socket, addr), daemon=True)
            t.start()
            self._client_threads = [c for c in self._client_threads if c.is_alive()]
            self._client_threads.append(t)

    def stop(self):
        """停止代理服务器"""
        self.running = False
        try:
            self.socket.close()
        except OSError:
            pass

        # attempt to join client threads briefly
        for t in list(self._client_threads):
            if t.is_alive():
                t.join(timeout=0.2)
        self._client_threads.clear()

        if self._callback_handler is not None:
            self._logger.removeHandler(self._callback_handler)
            self._callback_handler = None
        logger.info('Proxy server stopped')

    def handle_client(self, client_socket, addr=None):
        """处理客户端连接：预读首字节判断协议后交给对应的处理器"""
        conn = Connection(client_socket, addr)
        try:
            conn.settimeout(self.handshake_timeout)
            first = conn.peek(1)
            if not first:
                # nothing was sent, nothing is owed
                logger.debug(f'Connection from {addr} closed before sending data')
                return

            protocol = classify(first[0])
            logger.debug(f'Connection from {addr} classified as {protocol}')
            if protocol == SOCKS5:
                Socks5Handler(conn, connect_timeout=self.connect_timeout,
                              strict_auth=self.socks_strict_auth).handle()
            else:
                HttpForwardHandler(conn, connect_timeout=self.connect_timeout, agent_name=self.agent_name,
                                   handshake_timeout=self.handshake_timeout).handle()
        except ProtocolError as e:
            logger.warning(f'Protocol error from {addr}: {e}')
        except ConnectionClosed as e:
            logger.debug(f'Connection from {addr} closed: {e}')
        except OSError as e:
            logger.debug(f'Connection from {addr} aborted: {e}')
        except Exception:
            logger.exception(f'Unexpected error handling client {addr}')
        finally:
            conn.close()


if __name__ == '__main__':
    server = ProxyServer(local_port=8080)
    try:
        server.start()
    except KeyboardInterrupt:
        print("\nShutting down proxy server...")
        server.stop()
