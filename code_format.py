# code_format.py
import secrets
import string
from dataclasses import dataclass
from enum import Enum

from checksum import TAG_LENGTH, compute_tag, verify_tag

DEFAULT_PREFIX = "CARMASTER"
PAYLOAD_LENGTH = 8
SEGMENT_COUNT = 4

_HEX = set(string.hexdigits.upper())


class CodeType(str, Enum):
    CUSTOMER = "customer"
    INFLUENCER = "influencer"
    DEMO = "demo"
    LAUNCH = "launch"
    PROMO = "promo"

    @property
    def tag(self) -> str:
        return _TAG_BY_TYPE[self]

    @classmethod
    def from_tag(cls, tag: str) -> "CodeType":
        try:
            return _TYPE_BY_TAG[tag]
        except KeyError:
            raise UnknownType(f"unknown type tag: {tag!r}") from None


_TAG_BY_TYPE = {
    CodeType.CUSTOMER: "CUST",
    CodeType.INFLUENCER: "INFL",
    CodeType.DEMO: "DEMO",
    CodeType.LAUNCH: "LNCH",
    CodeType.PROMO: "PRMO",
}
_TYPE_BY_TAG = {tag: code_type for code_type, tag in _TAG_BY_TYPE.items()}

if set(_TAG_BY_TYPE) != set(CodeType):
    raise RuntimeError("every CodeType needs a type tag")


# --------------------------------------------------------------------
# Format errors
# --------------------------------------------------------------------

class FormatError(ValueError):
    pass


class MalformedSegments(FormatError):
    pass


class UnknownType(FormatError):
    pass


class BadLength(FormatError):
    pass


class BadCharacters(FormatError):
    pass


class UnknownPrefix(FormatError):
    pass


# --------------------------------------------------------------------
# Encode / decode
# --------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedCode:
    prefix: str
    code_type: CodeType
    payload: str
    checksum: str

    @property
    def type_tag(self) -> str:
        return self.code_type.tag

    @property
    def payload_key(self) -> str:
        """The code without its checksum segment."""
        return f"{self.prefix}-{self.type_tag}-{self.payload}"

    @property
    def code(self) -> str:
        return f"{self.payload_key}-{self.checksum}"

    def verify(self, secret_key: str) -> bool:
        return verify_tag(
            self.prefix, self.type_tag, self.payload, secret_key, self.checksum
        )


def random_payload() -> str:
    # 4 random bytes -> 8 hex chars
    return secrets.token_hex(PAYLOAD_LENGTH // 2).upper()


def encode(prefix: str, code_type: CodeType, payload: str, secret_key: str) -> str:
    code_type = CodeType(code_type)
    checksum = compute_tag(prefix, code_type.tag, payload, secret_key)
    return f"{prefix}-{code_type.tag}-{payload}-{checksum}"


def canonicalize(code: str) -> str:
    return code.strip().upper()


def decode(code: str, prefix: str | None = None) -> ParsedCode:
    parts = canonicalize(code).split("-")
    if len(parts) != SEGMENT_COUNT:
        raise MalformedSegments(f"expected {SEGMENT_COUNT} segments, got {len(parts)}")

    code_prefix, type_tag, payload, checksum = parts
    if prefix is not None and code_prefix != prefix.upper():
        raise UnknownPrefix(f"unexpected prefix: {code_prefix!r}")

    code_type = CodeType.from_tag(type_tag)

    if len(payload) != PAYLOAD_LENGTH or len(checksum) != TAG_LENGTH:
        raise BadLength("random or checksum segment has the wrong length")
    if not set(payload) <= _HEX or not set(checksum) <= _HEX:
        raise BadCharacters("random and checksum segments must be hexadecimal")

    return ParsedCode(
        prefix=code_prefix,
        code_type=code_type,
        payload=payload,
        checksum=checksum,
    )
