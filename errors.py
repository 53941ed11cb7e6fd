class ProxyError(Exception):
    """代理内部错误的基类"""


class ProtocolError(ProxyError):
    """客户端发送了无法解析的协议数据（SOCKS5 字节 / HTTP 请求头），连接直接关闭"""


class HeaderTooLarge(ProtocolError):
    pass


class ConnectionClosed(ProxyError):
    """对端在读取完成前关闭了连接"""

    def __init__(self, expected=None, received=0):
        self.expected = expected
        self.received = received
        if expected is None:
            msg = 'connection closed by peer'
        else:
            msg = f'connection closed by peer after {received} of {expected} bytes'
        super().__init__(msg)
