#!/usr/bin/env python3
"""
Command-line interface for the ACME DNS gateway.
"""

import argparse
import logging
import sys
from pathlib import Path

from acme_dns_gateway import certificate
from acme_dns_gateway.acme import AcmeClient
from acme_dns_gateway.config import AcmeClientConfig
from acme_dns_gateway.core import AcmeEnrollmentManager, ping_directory
from acme_dns_gateway.exceptions import AcmeError, ConfigurationError

logger = logging.getLogger(__name__)

USER_AGENT = "acme-dns-gateway-cli"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parses command-line arguments.

    Returns:
        argparse.Namespace: The parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Enroll certificates from an ACME CA using DNS-01 validation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check the CA directory
  %(prog)s -c acme.json ping

  # Enroll with an existing CSR
  %(prog)s -c acme.json enroll --csr www.csr -o www.pem

  # Generate a key and CSR for several names
  %(prog)s -c acme.json enroll -d www.example.com -d example.com -o www.pem

  # Use the Let's Encrypt staging directory
  %(prog)s -c acme.json --staging enroll -d test.example.com -o test.pem

Without --config, settings are read from ACME_* environment variables.
""",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="JSON configuration file (defaults to ACME_* environment variables)",
    )
    parser.add_argument(
        "--secrets-dir",
        type=Path,
        help="Directory holding secret files named like their ACME_* variables",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--staging",
        action="store_true",
        help="Use the Let's Encrypt staging directory",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("ping", help="Check that the ACME directory is reachable")

    enroll = subparsers.add_parser("enroll", help="Obtain a certificate")
    enroll.add_argument("--csr", type=Path, help="CSR file (PEM or DER)")
    enroll.add_argument(
        "-d",
        "--domain",
        action="append",
        help="Domain name; the first is the CN. Can be specified multiple times.",
    )
    enroll.add_argument("-o", "--output", type=Path, help="Write the PEM chain here instead of stdout")
    enroll.add_argument(
        "--key-output",
        type=Path,
        help="Where to write the generated private key (only without --csr)",
    )

    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    """
    Configures the logging settings based on the verbosity level.

    Args:
        verbose: If True, enable DEBUG logging; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )


def load_config(args: argparse.Namespace) -> AcmeClientConfig:
    """Load settings from the config file, or from ACME_* variables when none is given."""
    if args.config:
        config = AcmeClientConfig.from_file(args.config)
    else:
        config = AcmeClientConfig.from_env(args.secrets_dir)
    if args.staging:
        config.directory_url = AcmeClient.TEST_DIRECTORY_URL
    return config


def build_csr(args: argparse.Namespace) -> tuple[bytes, str, list[str]]:
    """
    Read the CSR from disk, or generate a key and CSR for the given domains.

    Returns:
        tuple[bytes, str, list[str]]: (csr, subject, identifiers)

    Raises:
        ValueError: If neither --csr nor --domain is given.
    """
    if args.csr:
        data = args.csr.read_bytes()
        csr = certificate.load_csr(data)
        identifiers = args.domain or certificate.csr_identifiers(csr)
        return (data, f"CN={identifiers[0]}" if identifiers else "", identifiers)

    if not args.domain:
        raise ValueError("Either --csr or at least one --domain is required")

    private_key = certificate.generate_private_key()
    csr = certificate.generate_csr(args.domain[0], private_key, args.domain[1:])
    key_path = args.key_output or Path(f"{args.domain[0].replace('*', '_')}.key")
    key_path.write_text(certificate.private_key_to_pem(private_key))
    key_path.chmod(0o600)
    logger.info(f"Private key written to {key_path}")

    return (certificate.csr_to_der(csr), f"CN={args.domain[0]}", args.domain)


def run_enroll(manager: AcmeEnrollmentManager, args: argparse.Namespace) -> int:
    csr, subject, identifiers = build_csr(args)
    result = manager.enroll(csr, subject, identifiers)

    logger.info("=" * 60)
    logger.info("Enrollment Summary:")
    if not result:
        logger.error(f"  ✗ {', '.join(identifiers)}: FAILED")
        if result.message:
            logger.error(f"    Error: {result.message}")
        logger.error("=" * 60)
        return 1

    logger.info(f"  ✓ {', '.join(identifiers)}: SUCCESS")
    logger.info(f"    Request: {result.request_id}")
    logger.info("=" * 60)

    if args.output:
        args.output.write_text(result.certificate_pem)
        logger.info(f"Certificate written to {args.output}")
    else:
        sys.stdout.write(result.certificate_pem)
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        int: Exit code (0 for success, 1 for failure).
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args)
        logger.debug(f"Configuration: {config.redacted()}")

        if args.staging:
            logger.warning("=" * 60)
            logger.warning("STAGING MODE ENABLED")
            logger.warning("  - Certificates will NOT be trusted by browsers")
            logger.warning("=" * 60)

        if args.command == "ping":
            config.validate(require_dns=False)
            ping_directory(config.directory_url, USER_AGENT)
            return 0

        with AcmeEnrollmentManager(config, user_agent=USER_AGENT) as manager:
            return run_enroll(manager, args)

    except (ConfigurationError, ValueError) as e:
        logger.error(str(e))
        return 1
    except AcmeError as e:
        logger.error(f"ACME error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("\nOperation cancelled by user")
        return 130
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
