"""Request canonicalization and signature computation.

Every gateway signs requests with its own hard-coded rule. The rules implemented
here are:

* Nestpay "ver3" (Ziraat 3D_PAY forms and callbacks): values of all parameters
  except ``hash``/``encoding`` sorted case-insensitively by key, each escaped
  and followed by ``|``, then the escaped store key. SHA-512, hex digest packed
  back to bytes, base64.
* ``auth-hash`` (Akbank and Ziraat JSON API): base64(HMAC-SHA-512(secret, body)).
* Paycell two-stage hash: a security token derived from password and
  application name is threaded into the final ``hashData``.
* iyzico ``IYZWSv2``: hex HMAC-SHA-256 over random key, URI path and body,
  wrapped with the API key in a base64 ``Authorization`` header.

All functions are pure. Golden vectors are pinned in ``tests/test_signing.py``.
"""

import base64
import binascii
import enum
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Union

from .errors import SigningError


class OutputEncoding(str, enum.Enum):
    """How a raw digest is turned into the transmitted signature."""
    HEX = "hex"
    BASE64 = "base64"
    HEX_PACKED_BASE64 = "hex_packed_base64"


class KeyOrder(str, enum.Enum):
    """Sort rule applied to parameter keys before joining values."""
    CASE_SENSITIVE = "case_sensitive"
    CASE_INSENSITIVE = "case_insensitive"


@dataclass(frozen=True)
class SignatureSpec:
    """Constant signing policy for one provider.

    Changing these parameters invalidates 3-D sessions signed under the previous one.
    """
    name: str
    hash_family: str
    output_encoding: OutputEncoding
    key_order: KeyOrder = KeyOrder.CASE_INSENSITIVE
    excluded_keys: FrozenSet[str] = field(default_factory=lambda: frozenset({"hash", "encoding"}))
    secret_separator: str = ""


NESTPAY_VER3 = SignatureSpec(
    name="nestpay_ver3",
    hash_family="sha512",
    output_encoding=OutputEncoding.HEX_PACKED_BASE64,
    key_order=KeyOrder.CASE_INSENSITIVE,
    excluded_keys=frozenset({"hash", "encoding"}),
    secret_separator="",
)


def escape_value(value: str) -> str:
    """Escape a value for a pipe-joined canonical string.

    Backslashes are doubled before pipes are escaped; the reverse order would
    double-escape the backslash introduced for each pipe.
    """
    if not isinstance(value, str):
        raise SigningError(f"Canonical values must be strings, got {type(value).__name__}")
    return value.replace("\\", "\\\\").replace("|", "\\|")


def _sort_keys(keys, key_order: KeyOrder):
    if key_order == KeyOrder.CASE_INSENSITIVE:
        # tie-break on the raw key so keys differing only in case stay deterministic
        return sorted(keys, key=lambda k: (k.lower(), k))
    return sorted(keys)


def canonicalize(params: Mapping[str, str], spec: SignatureSpec, secret: str) -> str:
    """Build the deterministic signing string for ``params``.

    Args:
        params: Flat parameter map. Excluded keys are dropped case-insensitively.
        spec: Signing policy of the provider.
        secret: Shared secret appended after the last value.

    Returns:
        The canonical string.

    Raises:
        SigningError: If a key or value is not a string.
    """
    excluded = {k.lower() for k in spec.excluded_keys}
    keys = []
    for key in params:
        if not isinstance(key, str):
            raise SigningError(f"Canonical keys must be strings, got {type(key).__name__}")
        if key.lower() not in excluded:
            keys.append(key)

    parts = []
    for key in _sort_keys(keys, spec.key_order):
        parts.append(escape_value(params[key]))
        parts.append("|")
    parts.append(escape_value(secret))
    parts.append(spec.secret_separator)
    return "".join(parts)


def digest(data: bytes, hash_family: str) -> bytes:
    """Return the raw digest of ``data`` for the given hash family."""
    try:
        hasher = hashlib.new(hash_family)
    except ValueError as e:
        raise SigningError(f"Unsupported hash family: {hash_family}") from e
    hasher.update(data)
    return hasher.digest()


def encode_digest(raw: bytes, encoding: OutputEncoding) -> str:
    """Encode a raw digest.

    ``HEX_PACKED_BASE64`` mirrors PHP's ``base64_encode(pack('H*', hash(...)))``:
    the hex digest is decoded back to bytes before base64. ``HEX`` and
    ``BASE64`` give values of different length and alphabet and are never
    interchangeable at the gateway.
    """
    if encoding == OutputEncoding.HEX:
        return raw.hex()
    if encoding == OutputEncoding.BASE64:
        return base64.b64encode(raw).decode("ascii")
    if encoding == OutputEncoding.HEX_PACKED_BASE64:
        packed = binascii.unhexlify(raw.hex())
        return base64.b64encode(packed).decode("ascii")
    raise SigningError(f"Unsupported output encoding: {encoding}")


def constant_time_equals(expected: str, received: str) -> bool:
    """Compare two signatures without leaking timing information."""
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


class SignatureEngine:
    """Applies a :class:`SignatureSpec` to a parameter set."""

    def __init__(self, spec: SignatureSpec):
        self.spec = spec

    def canonical(self, params: Mapping[str, str], secret: str) -> str:
        return canonicalize(params, self.spec, secret)

    def sign(self, params: Mapping[str, str], secret: str) -> str:
        """Canonicalize, hash and encode ``params`` with ``secret``."""
        canonical = self.canonical(params, secret)
        raw = digest(canonical.encode("utf-8"), self.spec.hash_family)
        return encode_digest(raw, self.spec.output_encoding)

    def verify(self, params: Mapping[str, str], secret: str, signature: str) -> bool:
        """Check a signature supplied by the gateway, e.g. a callback ``HASH`` field."""
        if not signature:
            return False
        return constant_time_equals(self.sign(params, secret), signature)


def ver3_hash(params: Mapping[str, str], store_key: str) -> str:
    """Nestpay ``hashAlgorithm=ver3`` signature."""
    return SignatureEngine(NESTPAY_VER3).sign(params, store_key)


def hmac_sha512_b64(secret: str, body: Union[str, bytes]) -> str:
    """base64(HMAC-SHA-512(secret, body)) as sent in the ``auth-hash`` header.

    ``body`` must be the exact bytes put on the wire.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode("ascii")


def _sha256_b64(data: str) -> str:
    return encode_digest(digest(data.encode("utf-8"), "sha256"), OutputEncoding.BASE64)


def paycell_security_data(password: str, username: str) -> str:
    """Stage 1: base64(SHA-256(upper(password + username)))."""
    return _sha256_b64((password + username).upper())


def paycell_hash_data(
    username: str,
    transaction_id: str,
    transaction_datetime: str,
    secure_code: str,
    security_data: str,
) -> str:
    """Stage 2: base64(SHA-256(upper(username + id + datetime + secure code) + upper(security data))).

    ``security_data`` is the stage 1 output, uppercased once on its own.
    """
    prefix = (username + transaction_id + transaction_datetime + secure_code).upper()
    return _sha256_b64(prefix + security_data.upper())


def paycell_signature(
    username: str,
    password: str,
    secure_code: str,
    transaction_id: str,
    transaction_datetime: str,
) -> str:
    """Full two-stage Paycell ``hashData``."""
    security_data = paycell_security_data(password, username)
    return paycell_hash_data(username, transaction_id, transaction_datetime, secure_code, security_data)


def iyzico_signature(secret_key: str, random_key: str, uri_path: str, body: Union[str, bytes]) -> str:
    """hex(HMAC-SHA-256(secret, random key + URI path + body)).

    ``uri_path`` is the path without host or query, e.g. ``/payment/auth``.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    payload = (random_key + uri_path + body).encode("utf-8")
    return hmac.new(secret_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def iyzico_authorization(
    api_key: str,
    secret_key: str,
    random_key: str,
    uri_path: str,
    body: Union[str, bytes],
) -> str:
    """``Authorization`` header value for the iyzico API."""
    signature = iyzico_signature(secret_key, random_key, uri_path, body)
    params = f"apiKey:{api_key}&randomKey:{random_key}&signature:{signature}"
    return "IYZWSv2 " + base64.b64encode(params.encode("utf-8")).decode("ascii")
