"""
Webhook Signature Verification

Verifiers check the provider's HMAC over the raw, unparsed request body.
Parsing JSON first and re-serializing would change the bytes and break
verification, so callers hand over exactly what came off the wire.

- Stripe:   Stripe-Signature: t=<unix>,v1=<hex hmac_sha256(secret, "<t>.<body>")>
- Razorpay: X-Razorpay-Signature: <hex hmac_sha256(secret, body)>
"""

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Mapping, Optional, Tuple

from src.common.errors import MalformedSignatureHeader, SignatureMismatch


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class SignatureVerifier(ABC):
    """Provider-specific webhook authenticity check."""

    provider: str
    header_name: str

    @abstractmethod
    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """
        Raise unless ``raw_body`` was signed by the provider.

        Raises:
            MalformedSignatureHeader: header missing or unparseable
            SignatureMismatch: header well-formed but the signature is wrong
        """
        ...

    @abstractmethod
    def sign(self, raw_body: bytes) -> str:
        """Header value the provider would send for ``raw_body``."""
        ...


class StripeSignatureVerifier(SignatureVerifier):
    provider = "stripe"
    header_name = "stripe-signature"

    def __init__(self, secret: str, tolerance_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def _parse(self, header: str) -> Tuple[int, List[str]]:
        timestamp: Optional[str] = None
        signatures: List[str] = []
        for part in header.split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if timestamp is None or not signatures:
            raise MalformedSignatureHeader("Stripe-Signature needs t= and v1= elements")
        try:
            return int(timestamp), signatures
        except ValueError:
            raise MalformedSignatureHeader("Stripe-Signature timestamp is not an integer") from None

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        header = _header(headers, self.header_name)
        if not header:
            raise MalformedSignatureHeader("missing Stripe-Signature header")
        timestamp, signatures = self._parse(header)

        expected = _hmac_hex(self.secret, f"{timestamp}.".encode("utf-8") + raw_body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureMismatch()
        if self.tolerance_seconds and abs(self.clock() - timestamp) > self.tolerance_seconds:
            raise SignatureMismatch("signature timestamp outside tolerance")

    def sign(self, raw_body: bytes, timestamp: Optional[int] = None) -> str:
        timestamp = int(self.clock()) if timestamp is None else timestamp
        signature = _hmac_hex(self.secret, f"{timestamp}.".encode("utf-8") + raw_body)
        return f"t={timestamp},v1={signature}"


class RazorpaySignatureVerifier(SignatureVerifier):
    provider = "razorpay"
    header_name = "x-razorpay-signature"

    def __init__(self, secret: str):
        self.secret = secret

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        header = _header(headers, self.header_name)
        if not header:
            raise MalformedSignatureHeader("missing X-Razorpay-Signature header")
        candidate = header.strip().lower()
        if len(candidate) != 64 or any(c not in "0123456789abcdef" for c in candidate):
            raise MalformedSignatureHeader("X-Razorpay-Signature is not a hex SHA-256 digest")
        if not hmac.compare_digest(_hmac_hex(self.secret, raw_body), candidate):
            raise SignatureMismatch()

    def sign(self, raw_body: bytes) -> str:
        return _hmac_hex(self.secret, raw_body)
