import base64
import hashlib
import hmac

import pytest

from krakenbot.errors import SigningError
from krakenbot.signing import SignedRequest, encode_params, sign

SECRET = base64.b64encode(b"super-secret-key-material").decode()
PATH = "/0/private/AddOrder"
PARAMS = {"pair": "XXBTZEUR", "type": "buy", "ordertype": "limit", "volume": "0.01000000", "price": "30000.00"}


def test_sign_matches_kraken_algorithm():
    nonce = 1616492376594
    postdata = encode_params(PARAMS, nonce)
    digest = hashlib.sha256((str(nonce) + postdata).encode()).digest()
    expected = base64.b64encode(
        hmac.new(base64.b64decode(SECRET), PATH.encode() + digest, hashlib.sha512).digest()
    ).decode()

    assert sign(PATH, PARAMS, SECRET, nonce) == expected


def test_sign_is_deterministic():
    assert sign(PATH, PARAMS, SECRET, 42) == sign(PATH, PARAMS, SECRET, 42)


def test_changing_any_input_changes_signature():
    base = sign(PATH, PARAMS, SECRET, 42)

    assert sign(PATH, PARAMS, SECRET, 43) != base
    assert sign("/0/private/CancelOrder", PARAMS, SECRET, 42) != base
    assert sign(PATH, {**PARAMS, "volume": "0.01000001"}, SECRET, 42) != base
    other_secret = base64.b64encode(b"another-key").decode()
    assert sign(PATH, PARAMS, other_secret, 42) != base


def test_encode_params_keeps_order_and_appends_nonce():
    assert encode_params({"b": "2", "a": 1}, 7) == "b=2&a=1&nonce=7"


def test_encode_params_ignores_caller_supplied_nonce():
    assert encode_params({"nonce": "1", "a": "x"}, 9) == "a=x&nonce=9"


def test_invalid_secret_raises_signing_error():
    with pytest.raises(SigningError):
        sign(PATH, PARAMS, "not base64!!", 1)


def test_signed_request_is_immutable_and_body_matches_signature():
    request = SignedRequest.build(PATH, PARAMS, 99)

    with pytest.raises(AttributeError):
        request.nonce = 100  # type: ignore[misc]

    assert request.post_data() == encode_params(PARAMS, 99)
    assert request.sign(SECRET) == sign(PATH, PARAMS, SECRET, 99)
