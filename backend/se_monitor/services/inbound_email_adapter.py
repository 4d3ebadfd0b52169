"""
Inbound email adapter service.

Normalizes provider-specific inbound webhook payloads into a single
provider-agnostic NormalizedEmail model.

Supported providers (all handled by one function, no per-provider dispatch):
  - Mailgun   — recipient / sender / subject / body-html / body-plain /
                stripped-html / stripped-text / message-headers
  - SendGrid  — to / from / subject / html / text / headers / envelope
  - Postmark  — To / From / Subject / HtmlBody / TextBody / Headers

For every canonical field the candidate provider keys are tried in a fixed
order and the first non-empty string wins. The providers only differ in
naming, so adding a provider means adding its key names to the tuples below.

Nothing in this module raises on bad input: an unusable payload produces a
NormalizedEmail with empty strings / None.
"""

import json
import logging
import re
from typing import Any, Mapping, Optional, Union
from urllib.parse import parse_qsl

from se_monitor.models.inbound_email import NormalizedEmail

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Field name fallbacks, tried left to right
# ---------------------------------------------------------------------------

_RECIPIENT_KEYS = ("recipient", "to", "To")
_SENDER_KEYS = ("sender", "from", "From")
_SUBJECT_KEYS = ("subject", "Subject")
_HTML_KEYS = ("body-html", "stripped-html", "html", "HtmlBody")
_TEXT_KEYS = ("body-plain", "stripped-text", "text", "TextBody")

_ANGLE_ADDR_RE = re.compile(r"<([^>]+)>")
_BARE_ADDR_RE = re.compile(r"([^\s<>,;\"]+@[^\s<>,;\"]+)")


# ---------------------------------------------------------------------------
# Raw body decoding
# ---------------------------------------------------------------------------

def decode_webhook_body(raw_body: Union[bytes, str], content_type: str = "") -> dict:
    """
    Decode a raw JSON or form-urlencoded webhook body into a flat dict.

    JSON is tried first when the content type says so, form-urlencoded when
    the content type says so; for anything else JSON is tried and
    form-urlencoded is the fallback. Multipart bodies are decoded by the web
    framework before they reach this function.

    Returns {} when nothing usable can be decoded.
    """
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    if not raw_body or not raw_body.strip():
        return {}

    content_type = (content_type or "").lower()

    if "application/x-www-form-urlencoded" in content_type:
        return _decode_form(raw_body)

    try:
        decoded = json.loads(raw_body)
    except ValueError:
        if "application/json" in content_type:
            logger.warning("Webhook body declared JSON but did not parse")
            return {}
        return _decode_form(raw_body)

    if not isinstance(decoded, dict):
        logger.warning(f"Webhook JSON body is a {type(decoded).__name__}, expected an object")
        return {}
    return decoded


def _decode_form(raw_body: str) -> dict:
    """Decode form-urlencoded text. Repeated keys keep their first value."""
    result: dict = {}
    for key, value in parse_qsl(raw_body, keep_blank_values=True):
        result.setdefault(key, value)
    return result


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _first_non_empty(payload: Mapping[str, Any], keys: tuple) -> str:
    """Return the first value under ``keys`` that is a non-blank string, else ""."""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def normalize_address(value: str) -> str:
    """
    Reduce an address header to a bare lowercased address.

      "StreetEasy <Alerts@StreetEasy.com>"  -> "alerts@streeteasy.com"
      "a@b.com, c@d.com"                     -> "a@b.com"
      "not an address"                       -> "not an address"
    """
    if not value:
        return ""
    match = _ANGLE_ADDR_RE.search(value) or _BARE_ADDR_RE.search(value)
    addr = match.group(1) if match else value
    return addr.strip().lower()


def _envelope_recipient(payload: Mapping[str, Any]) -> str:
    """SendGrid's ``envelope`` JSON carries the SMTP recipient list."""
    envelope = payload.get("envelope")
    if not isinstance(envelope, str) or not envelope:
        return ""
    try:
        to = json.loads(envelope).get("to")
    except (ValueError, AttributeError):
        return ""
    if isinstance(to, list) and to and isinstance(to[0], str):
        return to[0]
    return to if isinstance(to, str) else ""


def parse_headers(payload: Mapping[str, Any]) -> Optional[dict[str, str]]:
    """
    Build a header mapping from whichever header field the provider sent.

      Mailgun  message-headers  JSON list of [name, value] pairs
      Postmark Headers          list of {"Name": ..., "Value": ...}
      other    headers          JSON object

    Any parse failure gives None.
    """
    mailgun_headers = payload.get("message-headers")
    if mailgun_headers:
        try:
            pairs = json.loads(mailgun_headers) if isinstance(mailgun_headers, str) else mailgun_headers
            return {str(name): str(value) for name, value in pairs}
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable message-headers field")
            return None

    postmark_headers = payload.get("Headers")
    if isinstance(postmark_headers, list):
        try:
            return {str(h["Name"]): str(h["Value"]) for h in postmark_headers}
        except (KeyError, TypeError):
            logger.debug("Ignoring malformed Postmark Headers field")
            return None

    headers = payload.get("headers")
    if headers:
        try:
            parsed = json.loads(headers) if isinstance(headers, str) else headers
        except ValueError:
            # SendGrid sends raw header text here, which is not JSON.
            return None
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def normalize_payload(payload: Mapping[str, Any]) -> NormalizedEmail:
    """
    Convert any supported provider payload to NormalizedEmail.

    Never raises. A non-mapping payload is treated as empty.
    """
    if not isinstance(payload, Mapping):
        payload = {}

    recipient = _first_non_empty(payload, _RECIPIENT_KEYS) or _envelope_recipient(payload)

    return NormalizedEmail(
        recipient=normalize_address(recipient),
        sender=normalize_address(_first_non_empty(payload, _SENDER_KEYS)),
        subject=_first_non_empty(payload, _SUBJECT_KEYS),
        html_body=_first_non_empty(payload, _HTML_KEYS) or None,
        text_body=_first_non_empty(payload, _TEXT_KEYS) or None,
        raw_headers=parse_headers(payload),
    )
