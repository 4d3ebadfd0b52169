#!/usr/bin/env python3
"""
Dev helper: send a sample StreetEasy alert to the local inbound-email webhook.

Builds a webhook payload in Mailgun, SendGrid or Postmark shape around a
two-listing alert body and POSTs it to /api/webhooks/inbound-email.

Usage
-----
# Mailgun form post to localhost:8000 for user "user123"
python scripts/send_test_alert.py --user-id user123

# Postmark JSON payload
python scripts/send_test_alert.py --provider postmark

# Use a saved alert body instead of the built-in sample
python scripts/send_test_alert.py --html path/to/alert.html

# Print the payload without sending
python scripts/send_test_alert.py --dry-run

Environment / .env
------------------
INBOUND_WEBHOOK_SECRET   Sent as X-Webhook-Secret when set.
MAILGUN_SIGNING_KEY      Used to sign Mailgun payloads when set.

Requires httpx (installed with the ``test`` extra).
"""

import argparse
import hashlib
import hmac
import json
import os
import secrets
import sys
import textwrap
import time
from pathlib import Path

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Sample alert body
# ---------------------------------------------------------------------------

_SAMPLE_LISTINGS = [
    {
        "id": "4412345",
        "address": "345 East 12th Street, Apt 4B",
        "neighborhood": "East Village",
        "price": "$3,450",
        "rooms": "1 bed &middot; 1 bath",
        "extra": "No Fee",
    },
    {
        "id": "4418822",
        "address": "100 Bedford Avenue",
        "neighborhood": "Williamsburg",
        "price": "$2,900",
        "rooms": "Studio &middot; 1 bath",
        "extra": "",
    },
]


def _make_sample_html() -> str:
    """Return a minimal StreetEasy-style alert with two listings."""
    rows = []
    for listing in _SAMPLE_LISTINGS:
        url = f"https://streeteasy.com/rental/{listing['id']}?utm_source=alert&amp;utm_medium=email"
        rows.append(textwrap.dedent(f"""\
            <tr><td>
              <a href="{url}"><img src="https://photos.zillowstatic.com/fp/{listing['id']}-se_large_800_400.jpg"></a>
              <p><a href="{url}">{listing['address']}</a></p>
              <p>{listing['neighborhood']}</p>
              <p>{listing['price']}/mo &middot; {listing['rooms']}</p>
              <p>{listing['extra']}</p>
            </td></tr>
        """))
    # Separate listings the way real alerts do, with enough markup between them
    spacer = "<tr><td>" + "&nbsp;" * 80 + "</td></tr>\n"
    return "<html><body><table>\n" + spacer.join(rows) + "</table></body></html>"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_mailgun_payload(sender: str, recipient: str, subject: str, html: str) -> dict:
    """
    Mailgun inbound route payload (form fields).

    timestamp/token/signature are signed with MAILGUN_SIGNING_KEY when set.
    """
    timestamp = str(int(time.time()))
    token = secrets.token_hex(16)
    signing_key = os.getenv("MAILGUN_SIGNING_KEY", "")
    signature = (
        hmac.new(signing_key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256).hexdigest()
        if signing_key
        else ""
    )
    return {
        "recipient": recipient,
        "sender": sender,
        "from": f"StreetEasy <{sender}>",
        "subject": subject,
        "body-html": html,
        "timestamp": timestamp,
        "token": token,
        "signature": signature,
    }


def _build_sendgrid_payload(sender: str, recipient: str, subject: str, html: str) -> dict:
    """SendGrid Inbound Parse payload (form fields)."""
    return {
        "to": recipient,
        "from": f"StreetEasy <{sender}>",
        "subject": subject,
        "html": html,
        "envelope": json.dumps({"to": [recipient], "from": sender}),
    }


def _build_postmark_payload(sender: str, recipient: str, subject: str, html: str) -> dict:
    """Postmark inbound webhook payload (JSON, PascalCase keys)."""
    return {
        "To": recipient,
        "From": sender,
        "Subject": subject,
        "HtmlBody": html,
        "Headers": [{"Name": "X-Test-Alert", "Value": "1"}],
    }


_PAYLOAD_BUILDERS = {
    "mailgun": _build_mailgun_payload,
    "sendgrid": _build_sendgrid_payload,
    "postmark": _build_postmark_payload,
}

# Postmark posts JSON, the other two post form fields
_JSON_PROVIDERS = {"postmark"}


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_alert.py",
        description="Send a sample StreetEasy alert to the inbound-email webhook.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_alert.py
              python scripts/send_test_alert.py --provider sendgrid --user-id user123
              python scripts/send_test_alert.py --html saved_alert.html --dry-run
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--provider",
        default="mailgun",
        choices=list(_PAYLOAD_BUILDERS),
        help="Webhook payload format to use (default: mailgun)",
    )
    parser.add_argument(
        "--user-id",
        default="user123",
        help="User id placed in the plus-addressed recipient (default: user123)",
    )
    parser.add_argument(
        "--domain",
        default="listings.example.com",
        help="Inbound email domain (default: listings.example.com)",
    )
    parser.add_argument(
        "--from",
        dest="sender",
        default="alerts@streeteasy.com",
        help="Sender address (default: alerts@streeteasy.com)",
    )
    parser.add_argument(
        "--subject",
        default="New Rental Listings for your saved search",
        help="Email subject",
    )
    parser.add_argument(
        "--html",
        default=None,
        metavar="PATH",
        help="File with an alert HTML body. A built-in sample is used if omitted.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the payload JSON without sending it.",
    )

    args = parser.parse_args()

    if args.html:
        html_path = Path(args.html)
        if not html_path.exists():
            print(f"ERROR: File not found: {html_path}", file=sys.stderr)
            return 1
        html = html_path.read_text()
    else:
        html = _make_sample_html()

    recipient = f"{args.user_id}+se@{args.domain}"
    payload = _PAYLOAD_BUILDERS[args.provider](args.sender, recipient, args.subject, html)
    endpoint = f"{args.url.rstrip('/')}/api/webhooks/inbound-email"

    print(f"Provider  : {args.provider}")
    print(f"Endpoint  : {endpoint}")
    print(f"From      : {args.sender}")
    print(f"To        : {recipient}")
    print(f"Subject   : {args.subject}")
    print(f"Body      : {len(html):,} chars")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    headers = {}
    secret = os.getenv("INBOUND_WEBHOOK_SECRET", "")
    if secret:
        headers["X-Webhook-Secret"] = secret

    try:
        if args.provider in _JSON_PROVIDERS:
            response = httpx.post(endpoint, json=payload, headers=headers, timeout=30)
        else:
            response = httpx.post(endpoint, data=payload, headers=headers, timeout=30)
    except httpx.HTTPError as e:
        print(f"\n[FAIL] Request failed: {e}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
