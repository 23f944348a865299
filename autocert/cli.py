"""autocert command-line entry point.

Usage::

    autocert -c /etc/autocert/example.json
    autocert --data-dir /var/lib/autocert --common-name www.example.com --email admin@example.com
    python -m autocert -c settings.json --production
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

import httpx
from pydantic import ValidationError

from .acme_client import AcmeError
from .crypto import read_certificate_info
from .errors import AutocertError
from .manager import ensure_certificate
from .settings import AutocertSettings, load_settings


log = logging.getLogger(__name__)


def _get_version() -> str:
    from autocert import __version__

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autocert",
        description="Obtain or renew the TLS certificate of one domain via ACME HTTP-01.",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        help="JSON settings file. Flags override its values.",
    )
    parser.add_argument("--data-dir", metavar="DIR", help="Directory for account.pem, key.pem and cert.pem.")
    parser.add_argument("--common-name", metavar="DOMAIN", help="Domain the certificate covers.")
    parser.add_argument("--email", help="Contact email for the ACME account.")
    parser.add_argument("--host", dest="server_host", help="Challenge server host (default: the domain).")
    parser.add_argument("--port", dest="server_port", type=int, help="Challenge server port (default: 80).")
    parser.add_argument(
        "--production",
        action="store_true",
        default=None,
        help="Use the Let's Encrypt production endpoint instead of staging.",
    )
    parser.add_argument(
        "--renew-threshold-days",
        type=int,
        metavar="DAYS",
        help="Renew when fewer than DAYS days are left (default: 14).",
    )
    parser.add_argument("--directory-url", metavar="URL", help="Explicit ACME directory URL.")
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    return parser


def _settings_from_args(args: argparse.Namespace) -> AutocertSettings:
    options = {
        "data_dir": args.data_dir,
        "common_name": args.common_name,
        "email": args.email,
        "server_host": args.server_host,
        "server_port": args.server_port,
        "production": args.production,
        "renew_threshold_days": args.renew_threshold_days,
        "directory_url": args.directory_url,
    }
    if args.config:
        return load_settings(args.config, **options)
    return AutocertSettings(**{k: v for k, v in options.items() if v is not None})


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = _settings_from_args(args)
    except ValidationError as e:
        log.error("Invalid settings: %s", e)
        return 1
    except AutocertError as e:
        log.error("%s", e)
        return 1

    try:
        pair = asyncio.run(ensure_certificate(settings))
    except (AutocertError, AcmeError, httpx.HTTPError) as e:
        log.error("Certificate for %s not available: %s", settings.common_name, e)
        return 1

    info = read_certificate_info(pair.cert)
    print(f"{settings.common_name}: certificate valid until {info.not_after.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
