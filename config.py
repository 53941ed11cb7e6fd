import json
import logging
import os
from pathlib import Path

CONFIG_FILENAME = 'config.json'

DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 8080
DEFAULT_LOG_LEVEL = 'INFO'
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_AGENT_NAME = 'muxproxy'

logger = logging.getLogger('muxproxy.config')


def _int_or_none(value):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def find_config_path(path=None, environ=None):
    """按顺序查找配置文件：显式路径 > PROXY_CONFIG > 当前目录 > 模块目录"""
    environ = os.environ if environ is None else environ
    if path:
        return Path(path)
    if environ.get('PROXY_CONFIG'):
        return Path(environ['PROXY_CONFIG'])
    for candidate in (Path.cwd() / CONFIG_FILENAME, Path(__file__).resolve().parent / CONFIG_FILENAME):
        if candidate.exists():
            return candidate
    return None


class ProxyConfig:
    def __init__(self, host=DEFAULT_HOST, port=DEFAULT_PORT, log_level=DEFAULT_LOG_LEVEL, log_file=None,
                 connect_timeout=DEFAULT_CONNECT_TIMEOUT, handshake_timeout=DEFAULT_HANDSHAKE_TIMEOUT,
                 agent_name=DEFAULT_AGENT_NAME, socks_strict_auth=False):
        self.host = host
        self.port = int(port)
        self.log_level = log_level
        self.log_file = log_file
        self.connect_timeout = float(connect_timeout)
        self.handshake_timeout = float(handshake_timeout) if handshake_timeout else None
        self.agent_name = agent_name
        self.socks_strict_auth = bool(socks_strict_auth)

    def __repr__(self):
        return f'<ProxyConfig {self.to_dict()}>'

    @classmethod
    def from_dict(cls, data):
        """从 config.json 的内容构造，支持 {"log": {"level", "file"}} 嵌套写法"""
        cfg = cls()
        cfg.update(data)
        return cfg

    def update(self, data):
        log = data.get('log') or {}
        if isinstance(log, dict):
            if log.get('level'):
                self.log_level = log['level']
            if log.get('file'):
                self.log_file = log['file']
        if data.get('log_level'):
            self.log_level = data['log_level']
        if data.get('log_file'):
            self.log_file = data['log_file']
        if data.get('host'):
            self.host = data['host']
        port = _int_or_none(data.get('port'))
        if port is not None:
            self.port = port
        if data.get('connect_timeout') is not None:
            self.connect_timeout = float(data['connect_timeout'])
        if 'handshake_timeout' in data:
            value = data['handshake_timeout']
            self.handshake_timeout = float(value) if value else None
        if data.get('agent_name'):
            self.agent_name = data['agent_name']
        if 'socks_strict_auth' in data:
            self.socks_strict_auth = bool(data['socks_strict_auth'])
        return self

    def to_dict(self):
        return {
            'host': self.host,
            'port': self.port,
            'log': {'level': self.log_level, 'file': self.log_file},
            'connect_timeout': self.connect_timeout,
            'handshake_timeout': self.handshake_timeout,
            'agent_name': self.agent_name,
            'socks_strict_auth': self.socks_strict_auth,
        }

    def apply_environment(self, environ=None):
        """环境变量优先级最高：PORT / HOST / LOG_LEVEL / LOG_FILE"""
        environ = os.environ if environ is None else environ
        port = _int_or_none(environ.get('PORT'))
        if port:
            self.port = port
        if environ.get('HOST'):
            self.host = environ['HOST']
        if environ.get('LOG_LEVEL'):
            self.log_level = environ['LOG_LEVEL']
        if environ.get('LOG_FILE'):
            self.log_file = environ['LOG_FILE']
        return self

    @classmethod
    def load(cls, path=None, environ=None):
        """加载配置，优先级：环境变量 > 配置文件 > 默认值"""
        cfg = cls()
        p = find_config_path(path, environ)
        if p is not None:
            if p.exists():
                try:
                    data = json.loads(p.read_text(encoding='utf-8'))
                    if not isinstance(data, dict):
                        raise ValueError('top-level value must be an object')
                    cfg.update(data)
                except (OSError, ValueError) as e:
                    logger.error(f'Failed to parse {p}: {e}')
            else:
                logger.warning(f'Config file {p} not found, using defaults')
        return cfg.apply_environment(environ)

    def save(self, path=None):
        p = Path(path) if path else Path.cwd() / CONFIG_FILENAME
        p.write_text(json.dumps(self.to_dict(), indent=2), encoding='utf-8')
        return p
