"""
Donation Portal — command-line client
=====================================
Signs in against the portal API, lists donations, opens gateway payments,
and follows their status until the gateway settles them.

Usage:
    python portal.py login donor@example.org s3cret
    python portal.py donations --status PENDING
    python portal.py pay 42
    python portal.py resume "https://portal.example.org/payment/return?referenceCode=...&extra1=42"
"""

import sys

from donation_core.runner import main

if __name__ == "__main__":
    sys.exit(main())
