import pytest

from paygate.errors import MalformedInput
from paygate.signing import PaymentRequirements, format_requirements_header, parse_requirements_header


def _req(**kw):
    base = dict(
        scheme="exact",
        chain="eip155:84532",
        token="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        amount="0.010",
        currency="USDC",
        to="0x1c7d4b196cb0c7b01d743fbc6116a902379c7238",
        min_confirmations=0,
        order_id="ord_1",
        nonce="nx_1",
        nonce_exp="2025-01-01T00:05:00.000Z",
    )
    base.update(kw)
    return PaymentRequirements(**base)


def test_header_field_order_is_fixed():
    header = format_requirements_header(_req())
    keys = [part.split("=", 1)[0] for part in header.split(", ")]
    assert keys == [
        "scheme", "chain", "token", "amount", "currency", "to",
        "min_confirmations", "order_id", "nonce", "nonce_exp",
    ]
    assert 'amount="0.010"' in header


def test_callback_appended_last():
    header = _req(callback="https://example.test/cb").to_header()
    assert header.endswith('callback="https://example.test/cb"')


def test_parse_restores_fields():
    req = _req(min_confirmations=3)
    parsed = parse_requirements_header(req.to_header())
    assert parsed == req


def test_parse_defaults_currency_and_confirmations():
    header = (
        'scheme="exact", chain="c", token="t", amount="1", to="0xr", '
        'order_id="ord_1", nonce="nx_1", nonce_exp="2025-01-01T00:00:00.000Z"'
    )
    parsed = parse_requirements_header(header)
    assert parsed.currency == "USDC"
    assert parsed.min_confirmations == 0


@pytest.mark.parametrize("drop", ["scheme", "amount", "to", "nonce"])
def test_parse_missing_field(drop):
    header = ", ".join(p for p in _req().to_header().split(", ") if not p.startswith(f"{drop}="))
    with pytest.raises(MalformedInput):
        parse_requirements_header(header)


def test_bad_amount_rejected():
    with pytest.raises(ValueError):
        _req(amount="0.1.2")
    with pytest.raises(MalformedInput):
        parse_requirements_header(_req().to_header().replace('amount="0.010"', 'amount="-1"'))


def test_quote_in_value_rejected():
    with pytest.raises(MalformedInput):
        _req(callback='https://x/"y').to_header()
