# checksum.py
import hashlib
import hmac

TAG_LENGTH = 4


def compute_tag(prefix: str, type_tag: str, payload: str, secret_key: str) -> str:
    data = f"{prefix}-{type_tag}-{payload}-{secret_key}"
    digest = hashlib.sha256(data.encode("utf-8")).hexdigest()
    return digest[:TAG_LENGTH].upper()


def verify_tag(
    prefix: str,
    type_tag: str,
    payload: str,
    secret_key: str,
    candidate: str,
) -> bool:
    expected = compute_tag(prefix, type_tag, payload, secret_key)
    # Case-sensitive: "ab12" never matches "AB12".
    return hmac.compare_digest(expected, candidate)
