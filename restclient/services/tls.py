"""TLS context assembly: client identity, trusted roots, verification."""

from __future__ import annotations

import logging
import os
import ssl
import tempfile

import certifi

from restclient.config import ClientOptions
from restclient.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _load_inline_identity(ctx: ssl.SSLContext, cert_pem: str, key_pem: str) -> None:
    """Load a PEM certificate/key pair held in memory.

    :meth:`ssl.SSLContext.load_cert_chain` only reads from paths, so the
    material is staged in a private temporary directory for the duration
    of the call.
    """
    with tempfile.TemporaryDirectory(prefix="restclient-") as tmp:
        cert_path = os.path.join(tmp, "client.crt")
        key_path = os.path.join(tmp, "client.key")
        with open(cert_path, "w", encoding="utf-8") as fh:
            fh.write(cert_pem)
        with open(key_path, "w", encoding="utf-8") as fh:
            fh.write(key_pem)
        os.chmod(key_path, 0o600)
        ctx.load_cert_chain(cert_path, key_path)


def build_ssl_context(options: ClientOptions) -> ssl.SSLContext:
    """Build the TLS configuration shared by every request of one client.

    When a root CA is given it replaces the default trust store. Client
    certificates given as files win over inline strings. ``insecure``
    disables server verification last, so it overrides any trust setting.
    """
    if options.root_ca_file or options.root_ca_string:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        try:
            if options.root_ca_file:
                logger.debug("Reading root CA file: %s", options.root_ca_file)
                ctx.load_verify_locations(cafile=options.root_ca_file)
            else:
                logger.debug("Using provided root CA string")
                ctx.load_verify_locations(cadata=options.root_ca_string)
        except (OSError, ssl.SSLError, ValueError) as exc:
            raise ConfigurationError(f"failed to load root CA certificate: {exc}") from exc
    else:
        ctx = ssl.create_default_context(cafile=certifi.where())

    try:
        if options.cert_file and options.key_file:
            ctx.load_cert_chain(options.cert_file, options.key_file)
        elif options.cert_string and options.key_string:
            _load_inline_identity(ctx, options.cert_string, options.key_string)
    except (OSError, ssl.SSLError, ValueError) as exc:
        raise ConfigurationError(f"failed to load client certificate: {exc}") from exc

    if options.insecure:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    return ctx
