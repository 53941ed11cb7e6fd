import json
import socket
import threading
import time
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler

import pytest

from proxy_server import ProxyServer

LARGE_BODY = b'x' * (1024 * 1024)


class OriginHandler(BaseHTTPRequestHandler):
    protocol_version = 'HTTP/1.1'

    def _send(self, status, body, content_type='text/plain', extra=None):
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        for k, v in (extra or {}).items():
            self.send_header(k, v)
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)

    def do_GET(self):
        if self.path == '/test':
            self._send(200, b'Hello from origin', extra={'X-Origin': 'yes'})
        elif self.path == '/json':
            self._send(200, b'{"ok": true}', content_type='application/json')
        elif self.path == '/large':
            self._send(200, LARGE_BODY)
        elif self.path == '/slow':
            time.sleep(0.5)
            self._send(200, b'Slow Response')
        elif self.path == '/headers':
            echoed = {k.lower(): v for k, v in self.headers.items()}
            self._send(200, json.dumps(echoed).encode('utf-8'), content_type='application/json')
        elif self.path == '/redirect':
            self._send(302, b'', extra={'Location': '/test'})
        elif self.path == '/chunked':
            self.send_response(200)
            self.send_header('Content-Type', 'text/plain')
            self.send_header('Transfer-Encoding', 'chunked')
            self.end_headers()
            for part in (b'first,', b'second,', b'third'):
                self.wfile.write(b'%x\r\n%s\r\n' % (len(part), part))
            self.wfile.write(b'0\r\n\r\n')
        elif self.path.startswith('/query'):
            self._send(200, self.path.encode('utf-8'))
        else:
            self._send(404, b'Not Found')

    do_HEAD = do_GET

    def do_POST(self):
        if self.headers.get('Transfer-Encoding', '').lower() == 'chunked':
            body = b''
            while True:
                size = int(self.rfile.readline().strip(), 16)
                if size == 0:
                    self.rfile.readline()
                    break
                body += self.rfile.read(size)
                self.rfile.readline()
        else:
            body = self.rfile.read(int(self.headers.get('Content-Length', 0)))
        payload = json.dumps({'received': body.decode('utf-8'), 'length': len(body)}).encode('utf-8')
        self._send(200, payload, content_type='application/json')

    def log_message(self, format, *args):
        # suppress default logging
        return


@pytest.fixture
def origin():
    httpd = ThreadingHTTPServer(('127.0.0.1', 0), OriginHandler)
    httpd.daemon_threads = True
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    yield f'http://127.0.0.1:{httpd.server_address[1]}'
    httpd.shutdown()
    httpd.server_close()


class EchoServer:
    """TCP echo server that records when each of its connections sees EOF."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(('127.0.0.1', 0))
        self.sock.listen(16)
        self.port = self.sock.getsockname()[1]
        self.accepted = []
        self.closed = threading.Event()
        self._running = True

    def serve(self):
        while self._running:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                break
            self.accepted.append(conn)
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    def _echo(self, conn):
        try:
            while True:
                data = conn.recv(65536)
                if not data:
                    break
                conn.sendall(data)
        except OSError:
            pass
        finally:
            self.closed.set()
            conn.close()

    def stop(self):
        self._running = False
        self.sock.close()
        for c in self.accepted:
            try:
                c.close()
            except OSError:
                pass


@pytest.fixture
def echo_server():
    server = EchoServer()
    threading.Thread(target=server.serve, daemon=True).start()
    yield server
    server.stop()


def _run_proxy(**kwargs):
    server = ProxyServer(local_host='127.0.0.1', local_port=0, connect_timeout=3.0,
                         handshake_timeout=5.0, **kwargs)
    t = threading.Thread(target=server.start, daemon=True)
    t.start()
    assert server.ready.wait(5), 'proxy did not start'
    return server


@pytest.fixture
def proxy():
    server = _run_proxy()
    yield server
    server.stop()


@pytest.fixture
def strict_proxy():
    server = _run_proxy(socks_strict_auth=True)
    yield server
    server.stop()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('127.0.0.1', 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def no_proxy_env(monkeypatch):
    # urllib consults no_proxy even when a ProxyHandler is given explicitly
    for name in ('no_proxy', 'NO_PROXY'):
        monkeypatch.delenv(name, raising=False)
