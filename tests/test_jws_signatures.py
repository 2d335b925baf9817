import base64
import threading

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from paygate.errors import ConfigurationError, Reason
from paygate.signing import AsymmetricKey, JwsStrategy, load_keys_dir, load_pem_key

from conftest import T0, Clock
from test_requirements import _req


@pytest.fixture(scope="module")
def rsa_key():
    pk = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return AsymmetricKey("rsa-1", "RS256", pk, pk.public_key(), T0)


@pytest.fixture(scope="module")
def ec_key():
    pk = ec.generate_private_key(ec.SECP256R1())
    return AsymmetricKey("ec-1", "ES256", pk, pk.public_key(), T0)


def _flip_signature_char(token: str) -> str:
    head, payload, sig = token[4:].split(".")
    mid = len(sig) // 2
    swapped = "A" if sig[mid] != "A" else "B"
    return "jws=" + ".".join([head, payload, sig[:mid] + swapped + sig[mid + 1 :]])


@pytest.mark.parametrize("which", ["rsa_key", "ec_key"])
def test_round_trip_and_tamper(which, request):
    key = request.getfixturevalue(which)
    s = JwsStrategy({key.kid: key}, key.kid)
    signed = s.sign(_req())
    assert signed.signature.startswith("jws=")

    v = s.verify(signed.header, signed.signature)
    assert v.valid
    assert v.key_id == key.kid and v.algorithm == key.algorithm
    assert v.claims["sub"] == "ord_1:nx_1"
    assert v.claims["requirements"] == signed.header

    bad = s.verify(signed.header, _flip_signature_char(signed.signature))
    assert not bad.valid and bad.reason is Reason.SIGNATURE_MISMATCH


def test_header_and_payload_shape(rsa_key):
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1", issuer="iss-x", audience="aud-y")
    token = s.sign(_req()).signature[4:]
    header = jwt.get_unverified_header(token)
    assert header["alg"] == "RS256" and header["kid"] == "rsa-1" and header["typ"] == "JWT"
    claims = jwt.decode(token, options={"verify_signature": False})
    assert {"iss", "iat", "exp", "sub", "aud", "jti", "requirements"} <= set(claims)
    assert claims["exp"] - claims["iat"] == 300


def test_requirements_must_match_token(rsa_key):
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1")
    signed = s.sign(_req())
    v = s.verify(_req(amount="0.001").to_header(), signed.signature)
    assert v.reason is Reason.SIGNATURE_MISMATCH


def test_time_window(rsa_key):
    clock = Clock()
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1", clock=clock)
    clock.advance(-400)
    old = s.sign(_req())
    clock.advance(400)
    assert s.verify(old.header, old.signature).reason is Reason.EXPIRED_SIGNATURE

    clock.advance(120)
    future = s.sign(_req())
    clock.advance(-120)
    assert s.verify(future.header, future.signature).reason is Reason.FUTURE_SIGNATURE


def test_issuer_and_audience_checked(rsa_key):
    signer = JwsStrategy({"rsa-1": rsa_key}, "rsa-1", issuer="other")
    verifier = JwsStrategy({"rsa-1": rsa_key}, "rsa-1")
    signed = signer.sign(_req())
    assert verifier.verify(signed.header, signed.signature).reason is Reason.ISSUER_MISMATCH

    signer = JwsStrategy({"rsa-1": rsa_key}, "rsa-1", audience="someone-else")
    signed = signer.sign(_req())
    assert verifier.verify(signed.header, signed.signature).reason is Reason.AUDIENCE_MISMATCH


def test_unknown_kid_and_algorithm_confusion(rsa_key, ec_key):
    a = JwsStrategy({"rsa-1": rsa_key}, "rsa-1")
    b = JwsStrategy({"ec-1": ec_key}, "ec-1")
    signed = b.sign(_req())
    assert a.verify(signed.header, signed.signature).reason is Reason.UNKNOWN_KEY

    # An ES256 header naming an RSA kid
    forged = jwt.encode({"x": 1}, ec_key.private_key, algorithm="ES256", headers={"kid": "rsa-1", "typ": "JWT"})
    assert a.verify(signed.header, f"jws={forged}").reason is Reason.ALGORITHM_MISMATCH

    hs = jwt.encode({"x": 1}, "secret" * 6, algorithm="HS256", headers={"kid": "rsa-1", "typ": "JWT"})
    assert a.verify(signed.header, f"jws={hs}").reason is Reason.ALGORITHM_MISMATCH


def test_malformed_tokens(rsa_key):
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1")
    assert s.verify("h", "jws=onlyonepart").reason is Reason.MALFORMED_INPUT
    assert s.verify("h", "jws=a..c").reason is Reason.MALFORMED_INPUT
    assert s.verify("h", "jws=!!!.???.***").reason is Reason.MALFORMED_INPUT


def test_jwks_publishes_public_numbers(rsa_key, ec_key):
    s = JwsStrategy({"rsa-1": rsa_key, "ec-1": ec_key}, "rsa-1")
    keys = {k["kid"]: k for k in s.jwks()["keys"]}
    rsa_jwk, ec_jwk = keys["rsa-1"], keys["ec-1"]
    assert rsa_jwk["kty"] == "RSA" and rsa_jwk["e"] == "AQAB"
    n = int.from_bytes(base64.urlsafe_b64decode(rsa_jwk["n"] + "=" * (-len(rsa_jwk["n"]) % 4)), "big")
    assert n == rsa_key.public_key.public_numbers().n
    assert ec_jwk["kty"] == "EC" and ec_jwk["crv"] == "P-256"
    assert len(base64.urlsafe_b64decode(ec_jwk["x"] + "=")) == 32
    for jwk in keys.values():
        assert "d" not in jwk and "p" not in jwk


def test_jwks_key_verifies_token(rsa_key):
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1")
    token = s.sign(_req()).signature[4:]
    public = jwt.PyJWK(s.jwks()["keys"][0]).key
    claims = jwt.decode(token, public, algorithms=["RS256"], audience="paygate-client")
    assert claims["iss"] == "paygate-api"


def test_rotation_keeps_previous_keys_until_cap(rsa_key, tmp_path):
    s = JwsStrategy({"rsa-1": rsa_key}, "rsa-1", max_keys=2, keys_dir=tmp_path)
    old = s.sign(_req())
    assert s.rotate_key("ec-2", "ES256") == []
    assert s.current_kid == "ec-2"
    assert s.verify(old.header, old.signature).valid
    assert (tmp_path / "ec-2.key").exists()

    assert s.rotate_key("ec-3", "ES256") == ["rsa-1"]
    assert s.verify(old.header, old.signature).reason is Reason.UNKNOWN_KEY
    assert s.rotate_key("ec-4", "ES256") == ["ec-2"]
    assert not (tmp_path / "ec-2.key").exists()
    assert (tmp_path / "current").read_text().strip() == "ec-4"
    with pytest.raises(ValueError):
        s.rotate_key("x", "HS256")


def test_rotation_refuses_existing_kid():
    s = JwsStrategy({})
    signed = s.sign(_req())
    with pytest.raises(ValueError):
        s.rotate_key("default-rsa")
    assert s.key_info()["available_kids"] == ["default-rsa"]
    assert s.verify(signed.header, signed.signature).valid


def test_key_store_survives_concurrent_rotation(ec_key):
    s = JwsStrategy({"ec-1": ec_key}, "ec-1", max_keys=3)
    errors = []
    done = threading.Event()

    def reader():
        try:
            while not done.is_set():
                s.jwks()
                s.stats()
                s.key_info()
        except Exception as e:
            errors.append(e)

    t = threading.Thread(target=reader)
    t.start()
    try:
        for i in range(20):
            s.rotate_key(f"ec-r{i}", "ES256")
    finally:
        done.set()
        t.join()
    assert errors == []
    assert s.stats()["key_count"] == 3


def test_generates_default_key_when_empty():
    s = JwsStrategy({})
    assert s.current_kid == "default-rsa"
    assert s.stats()["algorithms"] == {"RS256": 1}
    signed = s.sign(_req())
    assert s.verify(signed.header, signed.signature).valid


def test_production_health_flags_dev_and_generated_keys(rsa_key):
    s = JwsStrategy({}, production=True)
    report = s.validate_keys()
    assert not report["valid"]
    s = JwsStrategy({"dev-rsa": rsa_key}, "dev-rsa", production=True)
    assert any("dev-rsa" in issue for issue in s.validate_keys()["issues"])
    assert JwsStrategy({"rsa-1": rsa_key}, "rsa-1", production=True).validate_keys()["valid"]


def test_designated_kid_must_exist(rsa_key):
    with pytest.raises(ConfigurationError):
        JwsStrategy({"rsa-1": rsa_key}, "missing")


def test_pem_loading_checks_algorithm_and_pair(rsa_key, ec_key, tmp_path):
    key = load_pem_key("k", rsa_key.private_pem(), rsa_key.public_pem(), "RS256")
    assert key.algorithm == "RS256"
    with pytest.raises(ConfigurationError):
        load_pem_key("k", rsa_key.private_pem(), algorithm="ES256")
    with pytest.raises(ConfigurationError):
        load_pem_key("k", rsa_key.private_pem(), ec_key.public_pem())
    with pytest.raises(ConfigurationError):
        load_pem_key("k", b"not a pem")

    (tmp_path / "ec-1.key").write_bytes(ec_key.private_pem())
    loaded = load_keys_dir(tmp_path)
    assert list(loaded) == ["ec-1"] and loaded["ec-1"].algorithm == "ES256"
