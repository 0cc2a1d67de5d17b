import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Mapping, Optional

from loguru import logger

from hunyuan3d_client.errors import CredentialError, InvalidInputError, SignatureError
from hunyuan3d_client.models import Credentials, SignedRequestSpec

ALGORITHM = "TC3-HMAC-SHA256"
KEY_PREFIX = "TC3"
REQUEST_TERMINATOR = "tc3_request"
CONTENT_TYPE = "application/json; charset=utf-8"
SIGNED_HEADERS = ("content-type", "host")

_CHARSET_RE = re.compile(r"charset=([\w-]+)", re.IGNORECASE)
_TOKEN_RE = re.compile(r"^[\x21-\x7e]+$")
_AUTHORIZATION_RE = re.compile(
    r"^(?P<algorithm>\S+) Credential=(?P<secret_id>[^/]+)/(?P<date>\d{4}-\d{2}-\d{2})/"
    r"(?P<service>[^/]+)/tc3_request, SignedHeaders=(?P<signed_headers>[^,]+), "
    r"Signature=(?P<signature>[0-9a-f]{64})$"
)


def utc_date(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def build_canonical_request(
    method: str,
    uri: str,
    query: str,
    headers: Mapping[str, str],
    payload: bytes,
) -> str:
    """Builds the canonical request string that gets hashed and signed.

    Only ``content-type`` and ``host`` take part in the signature, so any
    other header in ``headers`` is ignored. The payload hash is computed
    over ``payload`` exactly as given; callers must pass the bytes they
    send.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    missing = [name for name in SIGNED_HEADERS if name not in lowered]
    if missing:
        raise SignatureError(f"Missing signed headers: {', '.join(missing)}")

    charset_match = _CHARSET_RE.search(lowered["content-type"])
    charset = charset_match.group(1) if charset_match else "utf-8"
    try:
        payload.decode(charset)
    except (UnicodeDecodeError, LookupError) as e:
        raise InvalidInputError(f"Payload is not valid {charset}: {e}") from e

    canonical_headers = "".join(
        f"{name}:{lowered[name].strip().lower()}\n" for name in sorted(SIGNED_HEADERS)
    )
    signed_headers = ";".join(sorted(SIGNED_HEADERS))
    return "\n".join(
        [
            method.upper(),
            uri,
            query,
            canonical_headers,
            signed_headers,
            sha256_hex(payload),
        ]
    )


def check_credentials(credentials: Credentials) -> None:
    """Raises CredentialError for empty or malformed secret material.

    The error message never contains the secret key.
    """
    if not credentials.secret_id or not _TOKEN_RE.match(credentials.secret_id):
        raise CredentialError("SecretId is empty or contains invalid characters")
    secret_key = credentials.secret_key.get_secret_value()
    if not secret_key or not _TOKEN_RE.match(secret_key):
        raise CredentialError("SecretKey is empty or contains invalid characters")


def derive_signing_key(secret_key: str, date: str, service: str) -> bytes:
    secret_date = _hmac_sha256((KEY_PREFIX + secret_key).encode("utf-8"), date)
    secret_service = _hmac_sha256(secret_date, service)
    return _hmac_sha256(secret_service, REQUEST_TERMINATOR)


def string_to_sign(canonical_request: str, service: str, date: str, timestamp: int) -> str:
    scope = f"{date}/{service}/{REQUEST_TERMINATOR}"
    return "\n".join(
        [
            ALGORITHM,
            str(timestamp),
            scope,
            sha256_hex(canonical_request.encode("utf-8")),
        ]
    )


def sign(
    credentials: Credentials,
    canonical_request: str,
    service: str,
    date: str,
    timestamp: int,
) -> tuple[str, str]:
    """Returns ``(signature, authorization_header)`` for a canonical request."""
    check_credentials(credentials)
    if date != utc_date(timestamp):
        raise SignatureError(f"Date {date} does not match timestamp {timestamp}")

    signing_key = derive_signing_key(
        credentials.secret_key.get_secret_value(), date, service
    )
    signature = hmac.new(
        signing_key,
        string_to_sign(canonical_request, service, date, timestamp).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    authorization = (
        f"{ALGORITHM} Credential={credentials.secret_id}/{date}/{service}/{REQUEST_TERMINATOR}, "
        f"SignedHeaders={';'.join(sorted(SIGNED_HEADERS))}, Signature={signature}"
    )
    return signature, authorization


def check_timestamp_header(headers: Mapping[str, str], timestamp: int) -> None:
    """Raises SignatureError when X-TC-Timestamp differs from the signed timestamp."""
    sent = headers.get("X-TC-Timestamp")
    if sent != str(timestamp):
        raise SignatureError(
            f"X-TC-Timestamp {sent!r} does not match signed timestamp {timestamp}"
        )


class Signer:
    """Signs API calls for a single set of credentials."""

    def __init__(self, credentials: Credentials):
        check_credentials(credentials)
        self.credentials = credentials
        self.logger = logger

    def signed_headers(self, spec: SignedRequestSpec) -> dict[str, str]:
        """Returns the full header set for ``spec``, Authorization included."""
        headers = {
            "Content-Type": CONTENT_TYPE,
            "Host": spec.host,
            "X-TC-Action": spec.action,
            "X-TC-Version": spec.version,
            "X-TC-Region": spec.region,
            "X-TC-Timestamp": str(spec.timestamp),
        }
        canonical_request = build_canonical_request("POST", "/", "", headers, spec.payload)
        _, authorization = sign(
            self.credentials,
            canonical_request,
            spec.service,
            utc_date(spec.timestamp),
            spec.timestamp,
        )
        headers["Authorization"] = authorization
        self.logger.debug(f"Signed {spec.action} request at timestamp {spec.timestamp}")
        return headers

    def verify(self, headers: Mapping[str, str], payload: bytes) -> bool:
        """Checks an incoming request's Authorization header against its
        Content-Type, Host, X-TC-Timestamp and body."""
        lowered = {name.lower(): value for name, value in headers.items()}
        parsed = parse_authorization(lowered.get("authorization", ""))
        if parsed is None or parsed["secret_id"] != self.credentials.secret_id:
            return False
        try:
            timestamp = int(lowered.get("x-tc-timestamp", ""))
            canonical_request = build_canonical_request("POST", "/", "", lowered, payload)
            signature, _ = sign(
                self.credentials,
                canonical_request,
                parsed["service"],
                parsed["date"],
                timestamp,
            )
        except (ValueError, SignatureError):
            return False
        return hmac.compare_digest(signature, parsed["signature"])


def parse_authorization(value: str) -> Optional[dict]:
    match = _AUTHORIZATION_RE.match(value)
    return match.groupdict() if match else None
