"""
Signature Service for Gateway Requests

Implements the gateway's signing scheme: sorted field values joined with ':',
followed by the shared secret, digested with SHA-256.

Used for every outbound request and for inbound webhook verification.
"""
import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "sign"


def stringify_value(value: Any) -> str:
    """
    Render a scalar the way the gateway does before hashing.

    - Booleans: "true" / "false"
    - Integral floats and decimals lose their fractional part (100.0 -> "100")
    - Everything else: str()
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    return str(value)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _nested_chunks(item: Mapping[str, Any]) -> List[str]:
    chunks: List[str] = []
    for key in sorted(item.keys()):
        value = item[key]
        if not _is_blank(value):
            chunks.append(stringify_value(value))
    return chunks


def build_signature_chunks(fields: Mapping[str, Any]) -> List[str]:
    """
    Canonicalize a field map into its ordered list of value chunks.

    Args:
        fields: Request or webhook fields (the signature field is ignored)

    Returns:
        Stringified non-empty values in lexicographic key order, with
        sequences flattened and nested mappings expanded one level
    """
    chunks: List[str] = []

    for key in sorted(k for k in fields.keys() if k != SIGNATURE_FIELD):
        value = fields[key]

        if isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, Mapping):
                    chunks.extend(_nested_chunks(item))
                elif not _is_blank(item):
                    chunks.append(stringify_value(item))
        elif isinstance(value, Mapping):
            chunks.extend(_nested_chunks(value))
        elif not _is_blank(value):
            chunks.append(stringify_value(value))

    return chunks


def sign(fields: Mapping[str, Any], secret_key: str) -> str:
    """
    Compute the gateway signature for a field map.

    Args:
        fields: Field map to sign
        secret_key: Shared gateway API key

    Returns:
        Lowercase hex SHA-256 digest
    """
    payload = ":".join(build_signature_chunks(fields)) + ":" + secret_key
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def sign_request(fields: Dict[str, Any], secret_key: str) -> Dict[str, Any]:
    """Return a copy of the request with its signature field set."""
    signed = {k: v for k, v in fields.items() if k != SIGNATURE_FIELD}
    signed[SIGNATURE_FIELD] = sign(signed, secret_key)
    return signed


def verify(
    fields: Mapping[str, Any],
    candidate_signature: Optional[str],
    secret_key: str
) -> bool:
    """
    Verify a received signature using constant-time comparison.

    Returns False for a missing candidate, a length mismatch, or any error
    raised while canonicalizing the fields.
    """
    try:
        if not candidate_signature or not isinstance(candidate_signature, str):
            return False

        expected = sign(fields, secret_key)

        if len(candidate_signature) != len(expected):
            return False

        return hmac.compare_digest(
            expected.encode("utf-8"),
            candidate_signature.encode("utf-8")
        )
    except Exception as e:
        logger.warning(f"Signature verification failed with error: {e}")
        return False
