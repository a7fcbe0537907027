#!/usr/bin/env python3
"""
Entry point for running acme_dns_gateway as a module.
Usage: python -m acme_dns_gateway
"""

import sys

from acme_dns_gateway.cli import main

if __name__ == "__main__":
    sys.exit(main())
