"""Command-line helpers for OTP enrollment.

``provision`` creates a secret and prints its provisioning URI (and a QR code);
``code`` prints the current code for a secret, which is handy when testing an
enrollment by hand.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from .config import OtpSettings
from .otp import otp_utils, totp_engine

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="twofactor", description="Provision and inspect TOTP secrets.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision_parser = subparsers.add_parser("provision", help="Create a new TOTP secret and provisioning URI.")
    provision_parser.add_argument("--account", required=True, help="Account label shown in the authenticator app.")
    provision_parser.add_argument("--issuer", help="Issuer label (defaults to TWOFACTOR_ISSUER).")
    provision_parser.add_argument("--output", help="Also write the enrollment as JSON to this path.")
    provision_parser.add_argument(
        "--no-qr",
        action="store_true",
        help="Skip ASCII QR output (provisioning URI will still be printed).",
    )

    code_parser = subparsers.add_parser("code", help="Print the current code for a secret.")
    code_parser.add_argument("--secret", required=True, help="Base32 TOTP secret.")

    return parser


def handle_provision(
    settings: OtpSettings, account: str, issuer: Optional[str], output_path: Optional[str], show_qr: bool
) -> otp_utils.OtpEnrollment:
    secret = otp_utils.generate_otp_secret(settings.otp_secret_length)
    issuer = settings.issuer if issuer is None else issuer
    enrollment = otp_utils.OtpEnrollment(
        secret=secret,
        account_name=account,
        issuer=issuer,
        digits=settings.digits,
        interval=settings.interval,
        algorithm=settings.algorithm,
        provisioning_uri=otp_utils.build_provisioning_uri(
            secret,
            account,
            issuer=issuer,
            digits=settings.digits,
            period=settings.interval,
            algorithm=settings.algorithm,
        ),
    )
    if show_qr:
        print(otp_utils.render_qr_ascii(enrollment.provisioning_uri))
    print("Provisioning URI (store securely, do not share):")
    print(enrollment.provisioning_uri)
    if output_path:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(enrollment.to_dict(), indent=2), encoding="utf-8")
        print(f"Enrollment written to {output_path}.")
    return enrollment


def handle_code(settings: OtpSettings, secret: str) -> str:
    code = totp_engine.current_code(
        secret,
        interval=settings.interval,
        digits=settings.digits,
        algorithm=settings.algorithm,
    )
    print(code)
    return code


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        settings = OtpSettings()
        if args.command == "provision":
            handle_provision(settings, args.account, args.issuer, args.output, not args.no_qr)
            return 0
        if args.command == "code":
            handle_code(settings, args.secret)
            return 0
    except ValueError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}")
        return 1

    parser.error("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
