"""
CoursePay - VNPay request signing

Canonical query string + HMAC-SHA512, shared by outgoing requests and
inbound callback verification. Everything here is a pure function.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Iterable, Mapping
from urllib.parse import quote

from coursepay.models.gateway import SECURE_HASH_FIELD, SIGNATURE_FIELDS

# Characters JavaScript's encodeURIComponent leaves alone besides alphanumerics
_UNRESERVED = "-_.!~*'()"


def encode_component(value: str) -> str:
    """Percent-encode with encodeURIComponent semantics"""
    return quote(value, safe=_UNRESERVED)


def canonical_query(params: Mapping[str, Any], exclude: Iterable[str] = ()) -> str:
    """
    Build the canonical query string used as signature input.

    Keys are percent-encoded and sorted by byte value; values are
    percent-encoded with ``%20`` rendered as ``+`` (the processor signs that
    form, so it must be reproduced exactly). ``None`` values and excluded
    keys are left out. The input mapping is not modified.
    """
    skip = set(exclude)
    encoded = {
        encode_component(str(key)): value
        for key, value in params.items()
        if key not in skip and value is not None
    }
    pairs = []
    for key in sorted(encoded, key=lambda k: k.encode("utf-8")):
        value = encode_component(str(encoded[key])).replace("%20", "+")
        pairs.append(f"{key}={value}")
    return "&".join(pairs)


def hmac_sha512(data: str, secret: bytes) -> str:
    return hmac.new(secret, data.encode("utf-8"), hashlib.sha512).hexdigest()


def sign(params: Mapping[str, Any], secret: bytes, exclude: Iterable[str] = SIGNATURE_FIELDS) -> str:
    """Lowercase hex HMAC-SHA512 over the canonical form of ``params``"""
    return hmac_sha512(canonical_query(params, exclude), secret)


def verify_signature(params: Mapping[str, Any], secret: bytes) -> bool:
    """
    Check the ``vnp_SecureHash`` carried in ``params``.

    The signature fields themselves are never part of the recomputed input.
    Comparison is constant-time and ignores hex case.
    """
    supplied = params.get(SECURE_HASH_FIELD)
    if not supplied:
        return False
    expected = sign(params, secret, exclude=SIGNATURE_FIELDS)
    return hmac.compare_digest(str(supplied).lower().encode("ascii", "replace"), expected.encode("ascii"))
