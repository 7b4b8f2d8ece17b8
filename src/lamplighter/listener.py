"""Throwaway HTTPS listener used by the self-test.

Run as a separate process so the client side of the self-test is a real,
independent TLS client:

    python -m lamplighter.listener --cert example.custom-chain.pem \\
        --key example.custom-key.pem --port 8443
"""

from __future__ import annotations

import argparse
import http.server
import logging
import ssl
from typing import List, Optional

from .config.logging_config import init_logging

logger = logging.getLogger("lamplighter.listener")

BODY = b"lamplighter ok\n"


class _OkHandler(http.server.BaseHTTPRequestHandler):
    """Answer every GET with a fixed 200 body."""

    def do_GET(self) -> None:  # noqa: N802 (HTTP verb name)
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(BODY)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(BODY)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.info("listener: %s", format % args)


def make_server(
    host: str, port: int, cert_file: str, key_file: str
) -> http.server.ThreadingHTTPServer:
    """Brief: Build a TLS-wrapped ThreadingHTTPServer.

    Inputs:
      - host/port: Bind address.
      - cert_file: PEM chain (leaf first, then root).
      - key_file: PEM private key for the leaf.

    Outputs:
      - Bound server; call serve_forever() to start handling requests.
    """
    httpd = http.server.ThreadingHTTPServer((host, port), _OkHandler)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
        httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
    except Exception:
        httpd.server_close()
        raise
    return httpd


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Minimal HTTPS listener")
    parser.add_argument("--cert", required=True, help="PEM certificate chain")
    parser.add_argument("--key", required=True, help="PEM private key")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8443)
    args = parser.parse_args(argv)

    init_logging({"level": "info"})
    httpd = make_server(args.host, args.port, args.cert, args.key)
    logger.info("listening on https://%s:%d", args.host, args.port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
