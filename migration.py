"""
Codec for authenticator export URIs.

Handles the `otpauth-migration://offline?data=...` export format (a base64
protobuf payload, read and written here with a minimal wire-format codec) and
the standard `otpauth://{totp|hotp}/label?...` key URI format.
"""
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

from errors import (
    InvalidFormatError,
    ProtocolDecodeError,
    UnsupportedAlgorithmError,
    UnsupportedDigitCountError,
)
from otp import DEFAULT_PERIOD, decode_secret

# Configure logging
logger = logging.getLogger(__name__)

MIGRATION_SCHEME = "otpauth-migration://"
STANDARD_SCHEME = "otpauth://"

WIRE_VARINT = 0
WIRE_LEN = 2

UINT64_MASK = (1 << 64) - 1


class Algorithm(IntEnum):
    UNSPECIFIED = 0
    SHA1 = 1
    SHA256 = 2
    SHA512 = 3
    MD5 = 4


class DigitCount(IntEnum):
    UNSPECIFIED = 0
    SIX = 1
    EIGHT = 2


class OtpType(IntEnum):
    UNSPECIFIED = 0
    HOTP = 1
    TOTP = 2


ALGORITHM_NAMES = {
    Algorithm.SHA1: "SHA1",
    Algorithm.SHA256: "SHA256",
    Algorithm.SHA512: "SHA512",
    Algorithm.MD5: "MD5",
}

DIGIT_COUNTS = {
    DigitCount.SIX: 6,
    DigitCount.EIGHT: 8,
}

TYPE_NAMES = {
    OtpType.HOTP: "HOTP",
    OtpType.TOTP: "TOTP",
}


@dataclass
class OtpParameters:
    """One account as carried by the migration payload.

    Enum fields hold raw integers: values this codec does not know are passed
    through untouched.
    """
    secret: bytes = b""
    name: str = ""
    issuer: str = ""
    algorithm: int = Algorithm.SHA1
    digits: int = DigitCount.SIX
    type: int = OtpType.TOTP
    counter: int = 0

    @property
    def algorithm_name(self) -> str:
        return ALGORITHM_NAMES.get(self.algorithm, "SHA1")

    @property
    def digit_count(self) -> int:
        return DIGIT_COUNTS.get(self.digits, 6)

    @property
    def type_name(self) -> str:
        return TYPE_NAMES.get(self.type, "TOTP")


def algorithm_from_name(name: str) -> Algorithm:
    """Map an account algorithm name onto the wire enum (unknown means SHA1)."""
    for value, label in ALGORITHM_NAMES.items():
        if label == (name or "").upper():
            return value
    return Algorithm.SHA1


def digits_from_count(digits: int) -> DigitCount:
    return DigitCount.EIGHT if digits == 8 else DigitCount.SIX


def type_from_name(name: str) -> OtpType:
    return OtpType.HOTP if (name or "").upper() == "HOTP" else OtpType.TOTP


# --- Wire format -----------------------------------------------------------

class ProtoReader:
    """Sequential reader over a protobuf-encoded buffer."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def read_varint(self) -> int:
        """
        Read a base-128 varint of at most 64 bits.

        Raises:
            ProtocolDecodeError: On truncated input or overflow
        """
        result = 0
        shift = 0
        index = 0
        while True:
            if self.pos >= len(self.data):
                raise ProtocolDecodeError("unexpected end of data in varint")
            b = self.data[self.pos]
            self.pos += 1
            if b < 0x80:
                if index > 9 or (index == 9 and b > 1):
                    raise ProtocolDecodeError("varint overflow")
                return result | (b << shift)
            result |= (b & 0x7F) << shift
            shift += 7
            index += 1

    def read_tag(self) -> Tuple[int, int]:
        """Read a field tag, returning (field_number, wire_type)."""
        tag = self.read_varint()
        return tag >> 3, tag & 0x07

    def read_bytes(self) -> bytes:
        length = self.read_varint()
        end = self.pos + length
        if end > len(self.data):
            raise ProtocolDecodeError("length-delimited field exceeds buffer")
        value = self.data[self.pos:end]
        self.pos = end
        return bytes(value)

    def read_string(self) -> str:
        raw = self.read_bytes()
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolDecodeError(f"invalid UTF-8 in string field: {e}") from e

    def skip(self, wire_type: int) -> None:
        """Skip a field value of the given wire type."""
        if wire_type == WIRE_VARINT:
            self.read_varint()
        elif wire_type == WIRE_LEN:
            self.read_bytes()
        else:
            raise ProtocolDecodeError(f"unsupported wire type: {wire_type}")


class ProtoWriter:
    """Append-only protobuf encoder."""

    def __init__(self):
        self.buf = bytearray()

    def write_varint(self, value: int) -> None:
        value &= UINT64_MASK
        while value >= 0x80:
            self.buf.append((value & 0x7F) | 0x80)
            value >>= 7
        self.buf.append(value)

    def write_tag(self, field: int, wire_type: int) -> None:
        self.write_varint((field << 3) | wire_type)

    def write_varint_field(self, field: int, value: int) -> None:
        self.write_tag(field, WIRE_VARINT)
        self.write_varint(value)

    def write_bytes_field(self, field: int, value: bytes) -> None:
        self.write_tag(field, WIRE_LEN)
        self.write_varint(len(value))
        self.buf.extend(value)

    def write_string_field(self, field: int, value: str) -> None:
        self.write_bytes_field(field, value.encode('utf-8'))

    def getvalue(self) -> bytes:
        return bytes(self.buf)


def _to_int64(value: int) -> int:
    return value - (1 << 64) if value >= (1 << 63) else value


def decode_otp_parameters(data: bytes) -> OtpParameters:
    """
    Decode one OtpParameters message.

    Fields absent from the payload keep their defaults (SHA1 / 6 digits / TOTP).
    Unknown fields are skipped.
    """
    reader = ProtoReader(data)
    param = OtpParameters()

    while not reader.at_end():
        field, wire = reader.read_tag()

        if field == 1 and wire == WIRE_LEN:
            param.secret = reader.read_bytes()
        elif field == 2 and wire == WIRE_LEN:
            param.name = reader.read_string()
        elif field == 3 and wire == WIRE_LEN:
            param.issuer = reader.read_string()
        elif field == 4 and wire == WIRE_VARINT:
            param.algorithm = reader.read_varint()
        elif field == 5 and wire == WIRE_VARINT:
            param.digits = reader.read_varint()
        elif field == 6 and wire == WIRE_VARINT:
            param.type = reader.read_varint()
        elif field == 7 and wire == WIRE_VARINT:
            param.counter = _to_int64(reader.read_varint())
        else:
            reader.skip(wire)

    return param


def decode_payload(data: bytes) -> List[OtpParameters]:
    """Decode the top-level MigrationPayload message."""
    reader = ProtoReader(data)
    accounts = []

    while not reader.at_end():
        field, wire = reader.read_tag()

        if field == 1:
            if wire != WIRE_LEN:
                raise ProtocolDecodeError("invalid wire type for otp_parameters")
            accounts.append(decode_otp_parameters(reader.read_bytes()))
        elif field in (2, 3, 4, 5):
            # version, batch_size, batch_index, batch_id
            reader.skip(wire)
        else:
            raise ProtocolDecodeError(f"unknown field: {field}")

    return accounts


def encode_otp_parameters(param: OtpParameters) -> bytes:
    writer = ProtoWriter()

    if param.secret:
        writer.write_bytes_field(1, param.secret)
    if param.name:
        writer.write_string_field(2, param.name)
    if param.issuer:
        writer.write_string_field(3, param.issuer)

    writer.write_varint_field(4, param.algorithm)
    writer.write_varint_field(5, param.digits)
    writer.write_varint_field(6, param.type)

    if param.type == OtpType.HOTP:
        writer.write_varint_field(7, param.counter)

    return writer.getvalue()


def encode_payload(params: List[OtpParameters], batch_id: Optional[int] = None) -> bytes:
    """Encode a MigrationPayload holding every parameter set as a single batch."""
    writer = ProtoWriter()

    for param in params:
        writer.write_bytes_field(1, encode_otp_parameters(param))

    if batch_id is None:
        batch_id = time.time_ns() % 1000000

    writer.write_varint_field(2, 1)  # version
    writer.write_varint_field(3, len(params))  # batch_size
    writer.write_varint_field(4, 0)  # batch_index
    writer.write_varint_field(5, batch_id)

    return writer.getvalue()


# --- URIs --------------------------------------------------------------------

def _query_value(query: dict, name: str) -> str:
    values = query.get(name)
    return values[0] if values else ""


def decode_migration_uri(uri: str) -> List[OtpParameters]:
    """
    Decode an otpauth-migration:// URI into parameter sets.

    Raises:
        InvalidFormatError: Wrong scheme, missing or non-base64 data parameter
        ProtocolDecodeError: Malformed payload
    """
    uri = (uri or "").strip()
    if not uri.startswith(MIGRATION_SCHEME):
        raise InvalidFormatError("invalid URI scheme, expected otpauth-migration://")

    query = parse_qs(urlparse(uri).query)
    data = _query_value(query, "data")
    if not data:
        raise InvalidFormatError("missing 'data' parameter")

    # parse_qs turns a literal '+' into a space
    data = data.replace(" ", "+")
    data += "=" * (-len(data) % 4)
    try:
        payload = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidFormatError(f"base64 decode error: {e}") from e

    accounts = decode_payload(payload)
    logger.debug("Decoded %d accounts from migration payload", len(accounts))
    return accounts


def encode_migration_uri(params: List[OtpParameters]) -> str:
    """
    Build an otpauth-migration:// URI.

    The base64 payload must be percent-encoded as well, otherwise '+', '/' and
    '=' break the query string for other apps.
    """
    encoded = base64.b64encode(encode_payload(params)).decode('ascii')
    return f"{MIGRATION_SCHEME}offline?data={quote(encoded, safe='')}"


def parse_standard_uri(uri: str) -> Tuple[OtpParameters, int]:
    """
    Parse an otpauth:// key URI.

    Returns:
        Tuple of (parameters, period). Period comes from the optional
        `period` parameter and defaults to 30.

    Raises:
        InvalidFormatError: Malformed URI, missing label/secret/counter
        InvalidSecretError: Secret is not base32
        UnsupportedAlgorithmError: Unknown algorithm parameter
        UnsupportedDigitCountError: Digits other than 6 or 8
    """
    uri = (uri or "").strip()
    if not uri.startswith(STANDARD_SCHEME):
        raise InvalidFormatError("invalid URI scheme, expected otpauth://")

    parsed = urlparse(uri)
    host = parsed.netloc.lower()
    if host == "totp":
        otp_type = OtpType.TOTP
    elif host == "hotp":
        otp_type = OtpType.HOTP
    else:
        raise InvalidFormatError(f"unsupported OTP type: {parsed.netloc}")

    label = unquote(parsed.path[1:] if parsed.path.startswith("/") else parsed.path)
    if not label:
        raise InvalidFormatError("missing label in URI")

    if ":" in label:
        issuer, name = label.split(":", 1)
    else:
        issuer, name = "", label

    query = parse_qs(parsed.query)

    secret_text = _query_value(query, "secret")
    if not secret_text:
        raise InvalidFormatError("missing secret parameter")
    secret = decode_secret(secret_text)

    param = OtpParameters(
        secret=secret,
        name=name,
        issuer=issuer,
        algorithm=Algorithm.SHA1,
        digits=DigitCount.SIX,
        type=otp_type,
    )

    issuer_param = _query_value(query, "issuer")
    if issuer_param:
        param.issuer = issuer_param

    algorithm = _query_value(query, "algorithm")
    if algorithm:
        value = algorithm_from_name(algorithm)
        if ALGORITHM_NAMES[value] != algorithm.upper():
            raise UnsupportedAlgorithmError(f"unsupported algorithm: {algorithm}")
        param.algorithm = value

    digits = _query_value(query, "digits")
    if digits:
        if digits == "6":
            param.digits = DigitCount.SIX
        elif digits == "8":
            param.digits = DigitCount.EIGHT
        else:
            raise UnsupportedDigitCountError(f"unsupported digit count: {digits}")

    if otp_type == OtpType.HOTP:
        counter = _query_value(query, "counter")
        if not counter:
            raise InvalidFormatError("HOTP requires counter parameter")
        try:
            param.counter = int(counter)
        except ValueError as e:
            raise InvalidFormatError(f"invalid counter value: {counter}") from e

    period = DEFAULT_PERIOD
    period_text = _query_value(query, "period")
    if period_text:
        try:
            period = int(period_text)
        except ValueError:
            period = 0
        if period <= 0:
            logger.debug("Ignoring invalid period %r", period_text)
            period = DEFAULT_PERIOD

    return param, period


def decode_standard_uri(uri: str) -> OtpParameters:
    """Parse an otpauth:// key URI, discarding the period."""
    param, _ = parse_standard_uri(uri)
    return param


def encode_standard_uri(param: OtpParameters, period: int = DEFAULT_PERIOD) -> str:
    """Build an otpauth:// key URI for a single account."""
    label = quote(param.name, safe='@')
    if param.issuer:
        label = f"{quote(param.issuer, safe='')}:{label}"

    query = {
        "secret": base64.b32encode(param.secret).decode('ascii').rstrip("="),
    }
    if param.issuer:
        query["issuer"] = param.issuer
    query["algorithm"] = param.algorithm_name
    query["digits"] = str(param.digit_count)

    if param.type == OtpType.HOTP:
        query["counter"] = str(param.counter)
        host = "hotp"
    else:
        query["period"] = str(period or DEFAULT_PERIOD)
        host = "totp"

    return f"{STANDARD_SCHEME}{host}/{label}?{urlencode(query, quote_via=quote)}"
