"""
SIWA Message Creation and Parsing.

A SIWA message is the human-readable text an agent signs. The layout is
fixed so that ``serialize_message(parse_message(text)) == text`` for every
message this module produces::

    {domain} wants you to sign in with your Solana account:
    {address}

    {statement}

    URI: {uri}
    Version: {version}
    Chain ID: {chain_id}
    Nonce: {nonce}
    Issued At: {issued_at}
    Expiration Time: {expiration_time}
    Not Before: {not_before}
    Request ID: {request_id}
    Resources:
    - {resource}

The statement block, the last three fields and the resources block are
only present when set. Lines are joined with LF.
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from siwa.errors import InvalidAddress, InvalidDomain, InvalidMessage, InvalidURI
from siwa.nonce import generate_nonce
from siwa.store import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

MESSAGE_VERSION = "1"
DEFAULT_CHAIN_ID = "mainnet-beta"
DEFAULT_EXPIRATION_MINUTES = 5

# Fixed tolerance for clocks that run ahead of ours.
MAX_CLOCK_SKEW = timedelta(minutes=5)

HEADER_SUFFIX = " wants you to sign in with your Solana account:"

_HEADER_RE = re.compile(r"^(.+) wants you to sign in with your Solana account:$")
_FIELD_RE = re.compile(r"^([^:]+): (.*)$")
_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]$")
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*$")

# Field label -> Message attribute, in serialization order.
FIELDS = {
    "URI": "uri",
    "Version": "version",
    "Chain ID": "chain_id",
    "Nonce": "nonce",
    "Issued At": "issued_at",
    "Expiration Time": "expiration_time",
    "Not Before": "not_before",
    "Request ID": "request_id",
}
REQUIRED_FIELDS = ("URI", "Version", "Chain ID", "Nonce", "Issued At")

_JSON_KEYS = {
    "domain": "domain",
    "address": "address",
    "statement": "statement",
    "uri": "uri",
    "version": "version",
    "chain_id": "chainId",
    "nonce": "nonce",
    "issued_at": "issuedAt",
    "expiration_time": "expirationTime",
    "not_before": "notBefore",
    "request_id": "requestId",
    "resources": "resources",
}


@dataclass
class Message:
    """
    A Sign-In-With-Agent message.

    Timestamps are kept as the exact ISO-8601 strings that appear in the
    signed text so that re-serialization is byte-for-byte identical.
    """

    domain: str
    address: str
    uri: str
    version: str
    chain_id: str
    nonce: str
    issued_at: str
    statement: Optional[str] = None
    expiration_time: Optional[str] = None
    not_before: Optional[str] = None
    request_id: Optional[str] = None
    resources: Optional[List[str]] = None

    def __post_init__(self):
        # Empty optionals are not serialized, so normalize them to None.
        if not self.statement:
            self.statement = None
        if not self.resources:
            self.resources = None
        else:
            self.resources = list(self.resources)

    def serialize(self) -> str:
        return serialize_message(self)

    @classmethod
    def parse(cls, text: str) -> "Message":
        return parse_message(text)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly dict with camelCase keys, omitting unset optionals."""
        data = {}
        for attr, key in _JSON_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = list(value) if attr == "resources" else value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(**{attr: data.get(key) for attr, key in _JSON_KEYS.items() if key in data})


@dataclass
class TimingResult:
    """Outcome of validate_timing()."""

    valid: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


def is_valid_domain(domain: str) -> bool:
    if not domain or len(domain) > 253:
        return False
    if domain == "localhost":
        return True
    return bool(_DOMAIN_RE.match(domain))


def is_valid_uri(uri: str) -> bool:
    """True for absolute URIs (a scheme followed by something)."""
    if not uri or any(ch.isspace() for ch in uri):
        return False
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    if not parts.scheme or not _SCHEME_RE.match(parts.scheme):
        return False
    return bool(parts.netloc or parts.path)


def is_valid_address_format(address: str) -> bool:
    """Textual shape check only: base58 alphabet, 32-44 characters."""
    if not address or len(address) < 32 or len(address) > 44:
        return False
    return bool(_BASE58_RE.match(address))


def _check_single_line(name: str, value: Optional[str]) -> None:
    if value is not None and ("\n" in value or "\r" in value):
        raise InvalidMessage(f"{name} must be a single line")


def _check_field_value(name: str, value: Optional[str]) -> None:
    _check_single_line(name, value)
    if value is not None and value != value.strip():
        raise InvalidMessage(f"{name} must not have leading or trailing whitespace")


def create_message(
    domain: str,
    address: str,
    uri: str,
    statement: Optional[str] = None,
    chain_id: Optional[str] = None,
    nonce: Optional[str] = None,
    expiration_minutes: Optional[float] = DEFAULT_EXPIRATION_MINUTES,
    not_before: Optional[datetime] = None,
    request_id: Optional[str] = None,
    resources: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> Message:
    """
    Create a SIWA message with defaults filled in.

    Args:
        domain: Hostname of the service requesting sign-in, or "localhost".
        address: Agent's base58 public key.
        uri: Absolute URI of the resource being accessed.
        statement: Optional single-line human-readable statement.
        chain_id: Target network (default "mainnet-beta").
        nonce: Challenge nonce; generated when omitted.
        expiration_minutes: Validity window from now. None omits the
            Expiration Time field entirely.
        not_before: Optional earliest validity time.
        request_id: Optional correlation token.
        resources: Optional ordered list of requested scopes.
        now: Issuance time override (defaults to current UTC time).

    Returns:
        A Message ready for serialize_message().

    Raises:
        InvalidDomain, InvalidURI, InvalidAddress: On malformed input.
        InvalidMessage: If the statement or a field value spans lines, a
            field value is padded with whitespace, or the statement starts
            with "URI:".
    """
    if not is_valid_domain(domain):
        raise InvalidDomain()
    if not is_valid_uri(uri):
        raise InvalidURI()
    if not is_valid_address_format(address):
        raise InvalidAddress()

    if statement is not None:
        _check_single_line("statement", statement)
        statement = statement.strip()
        if statement.startswith("URI:"):
            raise InvalidMessage("statement must not start with 'URI:'")
    for value in resources or []:
        _check_field_value("resource", value)
    _check_field_value("request ID", request_id)
    _check_field_value("chain ID", chain_id)
    _check_field_value("nonce", nonce)

    issued = now or utcnow()
    expiration_time = None
    if expiration_minutes is not None:
        expiration_time = to_iso(issued + timedelta(minutes=expiration_minutes))

    return Message(
        domain=domain,
        address=address,
        uri=uri,
        version=MESSAGE_VERSION,
        chain_id=chain_id or DEFAULT_CHAIN_ID,
        nonce=nonce or generate_nonce(),
        issued_at=to_iso(issued),
        expiration_time=expiration_time,
        not_before=to_iso(not_before) if not_before else None,
        statement=statement,
        request_id=request_id,
        resources=resources,
    )


def serialize_message(message: Message) -> str:
    """Serialize a message to its canonical signed text."""
    lines = [f"{message.domain}{HEADER_SUFFIX}", message.address]

    if message.statement:
        lines.append("")
        lines.append(message.statement)

    lines.append("")
    for label, attr in FIELDS.items():
        value = getattr(message, attr)
        if value:
            lines.append(f"{label}: {value}")

    if message.resources:
        lines.append("Resources:")
        lines.extend(f"- {resource}" for resource in message.resources)

    return "\n".join(lines)


def parse_message(text: str) -> Message:
    """
    Parse canonical message text back into a Message.

    Only the known field labels are accepted; any other non-empty line in
    the field block is rejected so that unvalidated data cannot ride along
    in a signed message.

    Raises:
        InvalidMessage: With the reason, e.g. "missing header",
            "missing address", "missing Nonce", "unrecognized line: ...".
    """
    lines = text.split("\n")

    header = _HEADER_RE.match(lines[0])
    if not header:
        raise InvalidMessage("missing header")
    domain = header.group(1)

    address = lines[1].strip() if len(lines) > 1 else ""
    if not address:
        raise InvalidMessage("missing address")

    statement = None
    field_start = len(lines)
    for index in range(2, len(lines)):
        line = lines[index]
        if line.startswith("URI:"):
            field_start = index
            break
        if line.strip():
            if statement is not None:
                raise InvalidMessage("multi-line statement")
            statement = line.strip()

    fields: Dict[str, str] = {}
    resources: List[str] = []
    seen_resources = False
    in_resources = False
    for line in lines[field_start:]:
        if line == "Resources:":
            if seen_resources:
                raise InvalidMessage("duplicate Resources")
            seen_resources = in_resources = True
            continue
        if in_resources and line.startswith("- "):
            resources.append(line[2:])
            continue
        in_resources = False
        if not line:
            continue

        match = _FIELD_RE.match(line)
        if not match or match.group(1) not in FIELDS or not match.group(2):
            raise InvalidMessage(f"unrecognized line: {line[:64]}")
        label, value = match.group(1), match.group(2)
        if label in fields:
            raise InvalidMessage(f"duplicate {label}")
        fields[label] = value

    for label in REQUIRED_FIELDS:
        if not fields.get(label):
            raise InvalidMessage(f"missing {label}")

    return Message(
        domain=domain,
        address=address,
        statement=statement,
        resources=resources or None,
        **{attr: fields.get(label) for label, attr in FIELDS.items()},
    )


def validate_timing(message: Message, now: Optional[datetime] = None) -> TimingResult:
    """
    Check expiry, not-before and issuance bounds.

    Rules are evaluated in order and the first failure wins:
    expired, not yet valid, issued more than MAX_CLOCK_SKEW in the future.
    A message without Expiration Time or Not Before is not time-bounded.
    """
    now = now or utcnow()
    try:
        if message.expiration_time and now > from_iso(message.expiration_time):
            return TimingResult(False, "Message has expired", "message_expired")

        if message.not_before and now < from_iso(message.not_before):
            return TimingResult(False, "Message not yet valid", "message_not_yet_valid")

        if from_iso(message.issued_at) > now + MAX_CLOCK_SKEW:
            return TimingResult(False, "Message issued in the future", "message_issued_in_future")
    except ValueError as e:
        logger.debug(f"Unparseable timestamp in message: {e}")
        return TimingResult(False, f"Invalid timestamp: {e}", "invalid_message")

    return TimingResult(True)
