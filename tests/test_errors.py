import pytest

from cosign.errors import (
    HTTP_STATUS,
    Conflict,
    ErrorKind,
    InternalError,
    LedgerExpired,
    LedgerSubmissionError,
    MissingCounterpartyAuthorization,
    MissingFeePayerAuthorization,
    NotFound,
    ValidationError,
    http_status,
)


def test_every_kind_has_a_status():
    assert set(HTTP_STATUS) == set(ErrorKind)


@pytest.mark.parametrize("error, status", [
    (ValidationError("bad"), 400),
    (NotFound("gone"), 404),
    (Conflict("twice"), 409),
    (MissingFeePayerAuthorization("rFee"), 422),
    (MissingCounterpartyAuthorization("rFrom"), 422),
    (LedgerSubmissionError("nope", result_code="tecX"), 502),
    (LedgerExpired("H", 120, 125), 502),
    (InternalError("db"), 500),
])
def test_status_lookup(error, status):
    assert http_status(error) == status


def test_authorization_errors_are_distinguishable_without_messages():
    fee = MissingFeePayerAuthorization("rFee").to_dict()
    counter = MissingCounterpartyAuthorization("rFrom").to_dict()

    assert fee["kind"] == counter["kind"] == "AuthorizationMissing"
    assert fee["role"] == "fee_payer"
    assert counter["role"] == "counterparty"
    assert counter["account"] == "rFrom"


def test_ledger_error_fields():
    d = LedgerExpired("H", 120, 125).to_dict()
    assert d["kind"] == "LedgerSubmissionError"
    assert d["result_code"] == "EXPIRED"
    assert d["ledger_ref"] == "H"
    assert d["expiry_height"] == 120
