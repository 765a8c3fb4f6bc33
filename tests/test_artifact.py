import pytest
from xrpl.core.addresscodec import decode_classic_address
from xrpl.core.binarycodec import decode
from xrpl.models import Batch
from xrpl.transaction import sign_multiaccount_batch

from cosign import artifact
from cosign.errors import ValidationError


@pytest.fixture
def transfer(fee_payer, alice, bob):
    return artifact.cosigned_transfer_json(
        fee_payer=fee_payer.address,
        fee_payer_sequence=5,
        source=alice.address,
        source_sequence=9,
        destination=bob.address,
        amount_drops="10000000",
        base_fee_drops=10,
        last_ledger_sequence=120,
    )


def test_cosigned_transfer_shape(transfer, fee_payer, alice):
    assert transfer["TransactionType"] == "Batch"
    assert transfer["Account"] == fee_payer.address
    assert transfer["Flags"] == artifact.BATCH_MODE
    assert transfer["Fee"] == "50"

    payment, companion = artifact.inner_transactions(transfer)
    assert payment["Account"] == alice.address
    assert payment["Sequence"] == 9
    assert companion["TransactionType"] == "AccountSet"
    assert companion["Sequence"] == 6
    for tx in (payment, companion):
        assert tx["Fee"] == "0"
        assert tx["SigningPubKey"] == ""
        assert tx["Flags"] == artifact.INNER_FLAGS


def test_batch_fee():
    assert artifact.batch_fee(10, inner_count=2, batch_signer_count=1) == 50
    assert artifact.batch_fee(12, inner_count=3, batch_signer_count=0) == 60


def test_both_parties_verify(transfer, fee_payer, alice):
    tx = artifact.countersign(artifact.sign(transfer, fee_payer), alice)
    assert artifact.verified_signers(tx) == {fee_payer.address, alice.address}


def test_countersigning_keeps_the_fee_payer_signature(transfer, fee_payer, alice):
    signed = artifact.sign(transfer, fee_payer)
    tx = artifact.countersign(signed, alice)

    assert tx["TxnSignature"] == signed["TxnSignature"]
    assert artifact.transaction_body(tx) == artifact.transaction_body(signed)


def test_signatures_survive_serialization(transfer, fee_payer, alice):
    blob = artifact.serialize(artifact.countersign(artifact.sign(transfer, fee_payer), alice))
    assert artifact.verified_signers(artifact.deserialize(blob)) == {fee_payer.address, alice.address}


def test_batch_signers_are_sorted_and_replaced(transfer, alice, bob):
    tx = artifact.countersign(artifact.countersign(transfer, alice), bob)
    tx = artifact.countersign(tx, alice)

    accounts = [s["BatchSigner"]["Account"] for s in tx["BatchSigners"]]
    assert sorted(accounts) == sorted([alice.address, bob.address])
    ids = [int.from_bytes(decode_classic_address(a), "big") for a in accounts]
    assert ids == sorted(ids)


def test_tampered_payment_breaks_both_signatures(transfer, fee_payer, alice):
    tx = artifact.countersign(artifact.sign(transfer, fee_payer), alice)
    tx["RawTransactions"][0]["RawTransaction"]["Amount"] = "99000000"
    assert artifact.verified_signers(tx) == set()


def test_public_key_must_belong_to_claimed_account(transfer, alice, bob):
    tx = artifact.countersign(transfer, alice)
    tx["BatchSigners"][0]["BatchSigner"]["Account"] = bob.address
    assert artifact.verified_signers(tx) == set()


def test_counterparty_can_sign_with_xrpl_py(transfer, fee_payer, alice):
    batch = Batch.from_xrpl(artifact.sign(transfer, fee_payer))
    tx = sign_multiaccount_batch(alice, batch).to_xrpl()
    assert alice.address in artifact.verified_signers(tx)


def test_transfer_payment(transfer, alice):
    assert artifact.transfer_payment(transfer)["Account"] == alice.address


def test_single_sign(alice, bob):
    tx = artifact.payment_json(
        source=alice.address,
        destination=bob.address,
        amount_drops="1",
        sequence=1,
        fee_drops=10,
        last_ledger_sequence=50,
    )
    signed = artifact.sign(tx, alice)
    assert signed["SigningPubKey"] == alice.public_key
    assert signed["TxnSignature"]
    assert artifact.transfer_payment(signed) is signed

    blob = artifact.serialize(signed)
    txid = artifact.transaction_id(blob)
    assert len(txid) == 64
    assert txid == txid.upper()
    assert decode(blob)["Account"] == alice.address


@pytest.mark.parametrize("blob", ["", "zz", "not-hex", 42])
def test_malformed_blob(blob):
    with pytest.raises(ValidationError):
        artifact.deserialize(blob)


def test_plain_payment_is_not_a_contract_artifact(alice, bob):
    tx = artifact.payment_json(
        source=alice.address,
        destination=bob.address,
        amount_drops="1",
        sequence=1,
        fee_drops=10,
        last_ledger_sequence=50,
    )
    with pytest.raises(ValidationError):
        artifact.deserialize(artifact.serialize(artifact.sign(tx, alice)))


def test_transaction_body_drops_signatures(transfer, fee_payer, alice):
    tx = artifact.countersign(artifact.sign(transfer, fee_payer), alice)
    body = artifact.transaction_body(tx)
    assert "TxnSignature" not in body
    assert "BatchSigners" not in body
    assert body["SigningPubKey"] == fee_payer.public_key
