"""
mapilink.client
Command line client: log in, print the server's messages, optionally send
one line and print the reply.
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import structlog

from .connection import DEFAULT_MAX_REDIRECTS, MapiConnection, SessionConfig
from .errors import MapiError
from .protocol import DEFAULT_LANGUAGE, LineType


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="mapilink-client", description="MAPI block mode client.")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=50000)
    ap.add_argument("--user", default="monetdb")
    ap.add_argument("--password", default="monetdb")
    ap.add_argument("--database", default=None)
    ap.add_argument("--language", default=DEFAULT_LANGUAGE)
    ap.add_argument("--hash", default=None, help="comma separated hash methods to offer instead of the server's")
    ap.add_argument("--no-follow-redirects", action="store_true")
    ap.add_argument("--max-redirects", type=int, default=DEFAULT_MAX_REDIRECTS)
    ap.add_argument("--wiretap", default=None, help="file to log all traffic to")
    ap.add_argument("--send", default=None, help="line to send after logging in")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if args.verbose else logging.WARNING
        )
    )

    config = SessionConfig(
        database=args.database,
        language=args.language,
        hash=args.hash,
        follow_redirects=not args.no_follow_redirects,
        max_redirects=args.max_redirects,
    )

    with MapiConnection(config) as conn:
        try:
            if args.wiretap:
                conn.enable_wiretap(args.wiretap)
            warnings = conn.connect(args.host, args.port, args.user, args.password)
            print(f"[client] logged in to {conn.host}:{conn.port}")
            if warnings:
                print(warnings)

            if args.send is not None:
                conn.writer.write_line(args.send)
                while True:
                    line = conn.reader.readline()
                    if conn.reader.line_type == LineType.PROMPT:
                        break
                    print(line)
        except (MapiError, OSError) as e:
            print(f"[client] {type(e).__name__}: {e}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
