"""Kraken request signing (``API-Sign`` header).

    API-Sign = base64(HMAC-SHA512(base64decode(secret), path + SHA256(nonce + postdata)))

``postdata`` is the form-encoded request body, nonce included.
"""
import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping, Tuple, Union
from urllib.parse import urlencode

from .errors import SigningError

ParamValue = Union[str, int]


def encode_params(params: Mapping[str, ParamValue], nonce: int) -> str:
    """Form-encode params in insertion order with the nonce appended."""
    data = [(k, str(v)) for k, v in params.items() if k != "nonce"]
    data.append(("nonce", str(nonce)))
    return urlencode(data)


def sign(path: str, params: Mapping[str, ParamValue], secret: str, nonce: int) -> str:
    """Compute the API-Sign value for a private request.

    Args:
        path: URI path, e.g. ``/0/private/Balance``
        params: Request parameters, without the nonce
        secret: Base64-encoded API secret
        nonce: Nonce embedded in the request body

    Returns:
        Base64-encoded signature
    """
    postdata = encode_params(params, nonce)
    digest = hashlib.sha256((str(nonce) + postdata).encode("utf-8")).digest()
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        raise SigningError("Secret must be base64-encoded for signing")
    mac = hmac.new(key, path.encode("utf-8") + digest, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


@dataclass(frozen=True)
class SignedRequest:
    """An authenticated request, fixed once built."""

    endpoint: str
    params: Tuple[Tuple[str, ParamValue], ...]
    nonce: int

    @classmethod
    def build(cls, endpoint: str, params: Mapping[str, ParamValue], nonce: int) -> "SignedRequest":
        return cls(endpoint=endpoint, params=tuple(params.items()), nonce=nonce)

    def post_data(self) -> str:
        """The exact body that the signature covers."""
        return encode_params(dict(self.params), self.nonce)

    def sign(self, secret: str) -> str:
        return sign(self.endpoint, dict(self.params), secret, self.nonce)
