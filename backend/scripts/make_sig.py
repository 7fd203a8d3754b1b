#!/usr/bin/env python3
"""
Print the signature header a provider would send for a payload.

Usage:
    make_sig.py <provider> <secret> <payload>

Example:
    curl -X POST localhost:8000/webhooks/payments \
        -H "Stripe-Signature: $(make_sig.py payments whsec_x "$BODY")" -d "$BODY"
"""
import json
import sys

from hookledger.db.models import Provider
from hookledger.services.signatures import SIGNATURE_HEADERS, sign_payload

if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: make_sig.py <provider> <secret> <payload>", file=sys.stderr)
        sys.exit(1)

    try:
        provider = Provider(sys.argv[1])
    except ValueError:
        choices = ", ".join(p.value for p in Provider)
        print(f"Error: provider must be one of {choices}", file=sys.stderr)
        sys.exit(1)

    secret = sys.argv[2]
    payload = sys.argv[3]

    # SMS callbacks are form encoded; everything else is JSON
    if provider is not Provider.SMS:
        try:
            json.loads(payload)
        except json.JSONDecodeError:
            print("Error: Payload must be valid JSON", file=sys.stderr)
            sys.exit(1)

    print(f"# {SIGNATURE_HEADERS[provider]}", file=sys.stderr)
    print(sign_payload(provider, payload, secret))
