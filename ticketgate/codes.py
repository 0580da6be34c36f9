"""
Ticket codes: "<PREFIX>-<ticket_id>-<hash12>".

The suffix is the first 12 hex chars of HMAC-SHA256 over the ticket's
identity, keyed with the server secret. The ticket id is in clear text; the
code is only as strong as the suffix plus the lookup on the server.
"""

import hashlib
import hmac
from typing import NamedTuple, Optional

HASH_LEN = 12


class ParsedCode(NamedTuple):
    prefix: str
    ticket_id: str
    digest: str


def code_digest(ticket_id: str, event_id: str, buyer_id: str,
                secret: str) -> str:
    msg = f"{ticket_id}-{event_id}-{buyer_id}".encode()
    mac = hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()
    return mac[:HASH_LEN]


def generate_code(ticket_id: str, event_id: str, buyer_id: str, *,
                  secret: str, prefix: str = "ENX") -> str:
    if "-" in ticket_id:
        raise ValueError("ticket_id must not contain '-'")
    digest = code_digest(ticket_id, event_id, buyer_id, secret)
    return f"{prefix}-{ticket_id}-{digest}"


def parse_code(code: str, prefix: str = "ENX") -> Optional[ParsedCode]:
    parts = code.strip().split("-")
    if len(parts) != 3 or parts[0] != prefix:
        return None
    _, ticket_id, digest = parts
    if not ticket_id or len(digest) != HASH_LEN:
        return None
    return ParsedCode(prefix, ticket_id, digest.lower())


def code_matches(parsed: ParsedCode, event_id: str, buyer_id: str,
                 secret: str) -> bool:
    expected = code_digest(parsed.ticket_id, event_id, buyer_id, secret)
    return hmac.compare_digest(expected, parsed.digest)
