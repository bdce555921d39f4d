"""Send one request from the command line.

Usage:
    REST_API_URI=https://api.example.com python -m restclient GET /objects/1
    python -m restclient POST /objects --data '{"name": "x"}' --log-format json

Client options are read from ``REST_API_*`` environment variables (or a
``.env`` file).
"""

from __future__ import annotations

import argparse
import logging
import sys

from restclient.client import RestApiClient
from restclient.config import build_options
from restclient.exceptions import APIError, ConfigurationError, RestClientError
from restclient.logging_config import setup_logging

logger = logging.getLogger("restclient")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send one request to a REST API")
    parser.add_argument("method", help="HTTP verb, e.g. GET")
    parser.add_argument("path", help="Path appended verbatim to REST_API_URI")
    parser.add_argument("--data", default="", help="Raw JSON request body")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level (default: WARNING; DEBUG when REST_API_DEBUG is set)",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log output format (default: text)",
    )
    args = parser.parse_args(argv)

    try:
        options = build_options()
    except ConfigurationError as exc:
        setup_logging(args.log_level, args.log_format)
        logger.error("Invalid configuration: %s", exc)
        return 2

    setup_logging("DEBUG" if options.debug else args.log_level, args.log_format)

    try:
        with RestApiClient(options) as client:
            body = client.send_request(args.method.upper(), args.path, args.data)
    except APIError as exc:
        logger.error("Request failed with status %d", exc.status_code)
        print(exc.body)
        return 1
    except RestClientError as exc:
        logger.error("Request failed: %s", exc)
        return 1

    print(body)
    return 0


if __name__ == "__main__":
    sys.exit(main())
