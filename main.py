# main.py - 程序入口
import argparse
import logging
import sys

from config import ProxyConfig
from log_setup import setup_logging
from proxy_server import ProxyServer


def build_parser():
    parser = argparse.ArgumentParser(
        prog='muxproxy',
        description='Forward proxy serving HTTP, HTTPS (CONNECT) and SOCKS5 on a single port.')
    parser.add_argument('--config', help='path to config.json')
    parser.add_argument('--host', help='listen address (default 0.0.0.0)')
    parser.add_argument('--port', type=int, help='listen port (default 8080)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARN', 'WARNING', 'ERROR'],
                        type=str.upper, help='log level (default INFO)')
    parser.add_argument('--log-file', help='also write logs to this file')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    config = ProxyConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file

    setup_logging(config.log_level, config.log_file)
    logger = logging.getLogger('muxproxy')

    server = ProxyServer.from_config(config)
    try:
        server.start()
    except KeyboardInterrupt:
        logger.info('Shutting down proxy server...')
    except OSError:
        return 1
    finally:
        server.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
