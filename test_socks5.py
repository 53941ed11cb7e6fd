import socket
import struct
import threading

import pytest
import socks

from connection import Connection
from socks5_handler import (
    Socks5Handler, build_reply, CLOSED,
    REP_SUCCEEDED, REP_HOST_UNREACHABLE, REP_COMMAND_NOT_SUPPORTED, REP_ADDRESS_TYPE_NOT_SUPPORTED,
)

SUCCESS = bytes([0x05, 0x00, 0x00, 0x01, 0, 0, 0, 0, 0, 0])
UNREACHABLE = bytes([0x05, 0x04, 0x00, 0x01, 0, 0, 0, 0, 0, 0])
NOT_SUPPORTED = bytes([0x05, 0x07, 0x00, 0x01, 0, 0, 0, 0, 0, 0])
ATYP_NOT_SUPPORTED = bytes([0x05, 0x08, 0x00, 0x01, 0, 0, 0, 0, 0, 0])


def recv_exact(sock, n):
    data = b''
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


def open_client(proxy):
    s = socket.create_connection(('127.0.0.1', proxy.local_port), timeout=5)
    return s


def greet(sock, methods=(0x00,)):
    sock.sendall(bytes([0x05, len(methods)]) + bytes(methods))
    return recv_exact(sock, 2)


def connect_request(host, port, atyp=0x01):
    if atyp == 0x01:
        addr = socket.inet_aton(host)
    else:
        encoded = host.encode('utf-8')
        addr = bytes([len(encoded)]) + encoded
    return bytes([0x05, 0x01, 0x00, atyp]) + addr + struct.pack('!H', port)


def test_reply_encoding():
    assert build_reply(REP_SUCCEEDED) == SUCCESS
    assert build_reply(REP_HOST_UNREACHABLE) == UNREACHABLE
    assert build_reply(REP_COMMAND_NOT_SUPPORTED) == NOT_SUPPORTED
    assert build_reply(REP_ADDRESS_TYPE_NOT_SUPPORTED) == ATYP_NOT_SUPPORTED


def test_greeting_accepts_no_auth(proxy):
    with open_client(proxy) as s:
        assert greet(s) == b'\x05\x00'


def test_greeting_is_lenient_about_offered_methods(proxy):
    # only username/password and GSSAPI offered; NO AUTH is chosen anyway
    with open_client(proxy) as s:
        assert greet(s, methods=(0x01, 0x02)) == b'\x05\x00'


def test_strict_auth_rejects_missing_no_auth(strict_proxy):
    with open_client(strict_proxy) as s:
        assert greet(s, methods=(0x02,)) == b'\x05\xff'
        assert s.recv(16) == b''


def test_strict_auth_accepts_no_auth(strict_proxy):
    with open_client(strict_proxy) as s:
        assert greet(s, methods=(0x02, 0x00)) == b'\x05\x00'


def test_connect_ipv4_and_relay(proxy, echo_server):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(connect_request('127.0.0.1', echo_server.port))
        assert recv_exact(s, 10) == SUCCESS
        s.sendall(b'hello through socks')
        assert recv_exact(s, 19) == b'hello through socks'


def test_connect_domain_name(proxy, echo_server):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(connect_request('localhost', echo_server.port, atyp=0x03))
        assert recv_exact(s, 10) == SUCCESS
        s.sendall(b'ping')
        assert recv_exact(s, 4) == b'ping'


def test_greeting_and_request_in_one_write(proxy, echo_server):
    with open_client(proxy) as s:
        s.sendall(b'\x05\x01\x00' + connect_request('127.0.0.1', echo_server.port) + b'early')
        assert recv_exact(s, 2) == b'\x05\x00'
        assert recv_exact(s, 10) == SUCCESS
        assert recv_exact(s, 5) == b'early'


def test_connect_unreachable(proxy, closed_port):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(connect_request('127.0.0.1', closed_port))
        assert recv_exact(s, 10) == UNREACHABLE
        assert s.recv(16) == b''


def test_connect_unreachable_after_client_half_close(proxy, closed_port):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(connect_request('127.0.0.1', closed_port))
        s.shutdown(socket.SHUT_WR)
        assert recv_exact(s, 10) == UNREACHABLE
        assert s.recv(16) == b''


def test_ipv6_not_supported(proxy):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(bytes([0x05, 0x01, 0x00, 0x04]) + socket.inet_pton(socket.AF_INET6, '::1') + b'\x00\x50')
        assert recv_exact(s, 10) == ATYP_NOT_SUPPORTED
        assert s.recv(16) == b''


@pytest.mark.parametrize('cmd', [0x02, 0x03])
def test_bind_and_udp_associate_not_supported(proxy, cmd):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(bytes([0x05, cmd, 0x00, 0x01, 127, 0, 0, 1, 0x00, 0x50]))
        assert recv_exact(s, 10) == NOT_SUPPORTED
        assert s.recv(16) == b''


@pytest.mark.parametrize('request_bytes', [
    bytes([0x05, 0x01, 0x01, 0x01, 127, 0, 0, 1, 0x00, 0x50]),  # reserved byte set
    bytes([0x04, 0x01, 0x00, 0x01, 127, 0, 0, 1, 0x00, 0x50]),  # wrong version
    bytes([0x05, 0x01, 0x00, 0x09, 127, 0, 0, 1, 0x00, 0x50]),  # unknown address type
    bytes([0x05, 0x01, 0x00, 0x03, 0x00, 0x00, 0x50]),  # empty domain name
])
def test_malformed_request_closes_without_reply(proxy, request_bytes):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(request_bytes)
        assert s.recv(16) == b''


def test_truncated_request_closes_without_reply(proxy):
    with open_client(proxy) as s:
        greet(s)
        s.sendall(bytes([0x05, 0x01, 0x00, 0x01, 127]))
        s.shutdown(socket.SHUT_WR)
        assert s.recv(16) == b''


def test_handler_rejects_non_socks_greeting():
    a, b = socket.socketpair()
    try:
        b.sendall(b'\x04\x01')
        conn = Connection(a)
        handler = Socks5Handler(conn)
        handler.handle()
        assert handler.session.state == CLOSED
        conn.close()
        b.settimeout(2)
        assert b.recv(16) == b''
    finally:
        a.close()
        b.close()


def test_session_records_destination(echo_server):
    a, b = socket.socketpair()
    b.settimeout(5)
    conn = Connection(a)
    handler = Socks5Handler(conn, connect_timeout=2.0)
    t = threading.Thread(target=handler.handle, daemon=True)
    t.start()
    try:
        greet(b)
        b.sendall(connect_request('127.0.0.1', echo_server.port))
        assert recv_exact(b, 10) == SUCCESS
        assert handler.session.address == '127.0.0.1'
        assert handler.session.port == echo_server.port
        assert handler.session.destination == f'127.0.0.1:{echo_server.port}'
    finally:
        b.close()
        t.join(5)
        conn.close()
    assert handler.session.state == CLOSED


def test_pysocks_client(proxy, origin):
    host, port = origin.rsplit('/', 1)[1].split(':')
    s = socks.socksocket()
    s.set_proxy(socks.SOCKS5, '127.0.0.1', proxy.local_port)
    s.settimeout(5)
    try:
        s.connect((host, int(port)))
        s.sendall(b'GET /test HTTP/1.1\r\nHost: 127.0.0.1\r\nConnection: close\r\n\r\n')
        data = b''
        while True:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
    finally:
        s.close()
    assert data.startswith(b'HTTP/1.1 200')
    assert data.endswith(b'Hello from origin')


def test_pysocks_remote_dns(proxy, echo_server):
    s = socks.socksocket()
    s.set_proxy(socks.SOCKS5, '127.0.0.1', proxy.local_port, rdns=True)
    s.settimeout(5)
    try:
        s.connect(('localhost', echo_server.port))
        s.sendall(b'resolved by proxy')
        assert recv_exact(s, 17) == b'resolved by proxy'
    finally:
        s.close()


def test_client_close_tears_down_destination(proxy, echo_server):
    s = open_client(proxy)
    greet(s)
    s.sendall(connect_request('127.0.0.1', echo_server.port))
    assert recv_exact(s, 10) == SUCCESS
    s.close()
    assert echo_server.closed.wait(5)


def test_destination_close_tears_down_client(proxy):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(('127.0.0.1', 0))
    listener.listen(1)
    port = listener.getsockname()[1]

    def accept_and_close():
        conn, _ = listener.accept()
        conn.sendall(b'bye')
        conn.close()

    t = threading.Thread(target=accept_and_close, daemon=True)
    t.start()
    try:
        with open_client(proxy) as s:
            greet(s)
            s.sendall(connect_request('127.0.0.1', port))
            assert recv_exact(s, 10) == SUCCESS
            assert recv_exact(s, 3) == b'bye'
            assert s.recv(16) == b''
    finally:
        t.join(5)
        listener.close()
