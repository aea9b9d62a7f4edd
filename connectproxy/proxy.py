"""
ConnectProxy command line entry point.

usage: connectproxy <backend-host> <backend-port> <listen-port>
example: connectproxy 127.0.0.1 1111 1738
"""

import argparse
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.panel import Panel

from connectproxy.model.ConnectProxyServer import ConnectProxyServer
from connectproxy.model.Core.EventDeduper import EventDeduper
from connectproxy.model.Core.NotificationSink import DiscordWebhookSink, LogSink
from connectproxy.model.Core.header import NotifierConfig, ProxyConfig

WEBHOOK_ENV = "CONNECTPROXY_WEBHOOK_URL"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

console = Console()


def port(value):
    number = int(value)
    if not 0 <= number <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="connectproxy",
        description="Transparent TCP relay with deduplicated webhook notifications",
        epilog="example: connectproxy 127.0.0.1 1111 1738",
    )
    parser.add_argument("backend_host", help="Backend server address")
    parser.add_argument("backend_port", type=port, help="Backend server port")
    parser.add_argument("listen_port", type=port, help="Local port to listen on")
    parser.add_argument("--listen-host", default="0.0.0.0", help="Bind address")
    parser.add_argument(
        "--webhook-url",
        default=os.environ.get(WEBHOOK_ENV, ""),
        help=f"Notification webhook (default: ${WEBHOOK_ENV}, logs only when unset)",
    )
    parser.add_argument("--username", default="connectproxy", help="Webhook display name")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


def setup_logging(level="INFO", log_file=None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=3))
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)


def build_sink(args):
    if not args.webhook_url:
        return LogSink()
    return DiscordWebhookSink(NotifierConfig(webhook_url=args.webhook_url, username=args.username))


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    config = ProxyConfig(
        listen_host=args.listen_host,
        listen_port=args.listen_port,
        target_host=args.backend_host,
        target_port=args.backend_port,
    )
    sink = build_sink(args)
    server = ConnectProxyServer(config, EventDeduper(), sink)

    def shutdown(signum, frame):
        logging.getLogger('connectproxy').info("Shutting down the proxy...")
        server.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    console.print(Panel(
        f"[bold]Route:[/bold] {config.listen_addr} -> {config.target_addr}\n"
        f"[bold]Notifications:[/bold] {'webhook' if args.webhook_url else 'log only'}",
        title=f"[bold cyan]starting tcp proxy from {config.listen_addr} to {config.target_addr}[/bold cyan]",
        border_style="green",
    ))

    return 0 if server.start() else 1


if __name__ == "__main__":
    sys.exit(main())
