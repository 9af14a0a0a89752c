"""Operator command line: key bootstrap, certificate checks and test signatures."""

import argparse
import json
import sys
from typing import Optional, Sequence

from paysec_lib.config import Settings
from paysec_lib.errors import PaySecError
from paysec_lib.logging_utils import configure_logging
from paysec_lib.transport import TransportAuthenticator
from paysec_lib.webhook import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookValidator
from paysec_lib.xpay_token import XPayTokenSigner, load_or_create_key_pair


def _generate_keypair(args: argparse.Namespace) -> int:
    key_pair, generated = load_or_create_key_pair(args.private_key, args.public_key, key_size=args.key_size)
    if not generated:
        print(f"Key pair already exists at {args.private_key}; not overwriting.", file=sys.stderr)
    print("Register this public key with the payment network:\n")
    print(key_pair.public_key_pem().decode("ascii"))
    print("Keep the private key secret and out of version control.", file=sys.stderr)
    return 0


def _check_cert(args: argparse.Namespace) -> int:
    expiry = TransportAuthenticator.from_settings(Settings()).check_certificate_expiry()
    print(
        json.dumps(
            {
                "notBefore": expiry.not_before.isoformat(),
                "notAfter": expiry.not_after.isoformat(),
                "daysRemaining": expiry.days_remaining,
                "isExpired": expiry.is_expired,
                "expiringSoon": expiry.expiring_soon,
            },
            indent=2,
        )
    )
    return 1 if expiry.is_expired else 0


def _sign_webhook(args: argparse.Namespace) -> int:
    validator = WebhookValidator(args.secret)
    signature, timestamp = validator.generate_signature(args.payload, args.timestamp)
    print(json.dumps({SIGNATURE_HEADER: signature, TIMESTAMP_HEADER: timestamp}, indent=2))
    return 0


def _xpay_token(args: argparse.Namespace) -> int:
    signer = XPayTokenSigner.from_settings(Settings())
    print(json.dumps(signer.get_headers(args.path, args.query, args.body), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paysec", description=__doc__)
    parser.add_argument("--log-level", default="WARNING")
    subparsers = parser.add_subparsers(dest="command", required=True)

    keypair = subparsers.add_parser("generate-keypair", help="create the X-Pay-Token RSA key pair")
    keypair.add_argument("--private-key", default="keys/xpay_private.pem")
    keypair.add_argument("--public-key", default="keys/xpay_public.pem")
    keypair.add_argument("--key-size", type=int, choices=(2048, 3072, 4096), default=2048)
    keypair.set_defaults(func=_generate_keypair)

    cert = subparsers.add_parser("check-cert", help="report client certificate expiry")
    cert.set_defaults(func=_check_cert)

    webhook = subparsers.add_parser("sign-webhook", help="produce webhook headers for testing")
    webhook.add_argument("--secret", required=True)
    webhook.add_argument("--payload", required=True, help="raw JSON body")
    webhook.add_argument("--timestamp", default=None)
    webhook.set_defaults(func=_sign_webhook)

    token = subparsers.add_parser("xpay-token", help="produce X-Pay-Token headers for a request")
    token.add_argument("--path", required=True)
    token.add_argument("--query", default="")
    token.add_argument("--body", default="")
    token.set_defaults(func=_xpay_token)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except PaySecError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
