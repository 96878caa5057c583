"""Tests for marlowe_oracle.ledger — pycardano assembly, slots and fees."""

from datetime import timedelta

import pytest
from pycardano import Transaction

from marlowe_oracle.config import BalanceSettings
from marlowe_oracle.errors import BuildTransactionError
from marlowe_oracle.ledger import (
    VKEY_WITNESS_SIZE,
    assemble_transaction,
    execution_fee,
    key_hashes,
    min_fee,
    slot_of,
    to_ledger_value,
    witness_count,
)
from marlowe_oracle.types import TransactionSkeleton, TxOutput, TxOutRef, Value

from conftest import MARLOWE_ADDRESS, MOS_ADDRESS, NOW, make_utxo

ADA = 1_000_000
UNIT = "ab" * 28 + "41"


def skeleton(signers: list[str] | None = None, references: list[TxOutRef] | None = None) -> TransactionSkeleton:
    script_input = make_utxo(tx_hash="ee" * 32, index=1, lovelace=2 * ADA, address=MARLOWE_ADDRESS, datum="d87980")
    return TransactionSkeleton(
        contract_id="c1#1",
        script_input=script_input,
        redeemer="d87980",
        outputs=[TxOutput(address=MARLOWE_ADDRESS, value=script_input.value, datum="d87a80")],
        valid_from=NOW - timedelta(minutes=5),
        valid_until=NOW + timedelta(minutes=5),
        required_signers=signers if signers is not None else [MOS_ADDRESS],
        reference_inputs=references or [],
    )


@pytest.fixture
def settings():
    return BalanceSettings()


def test_slot_of_preprod():
    assert slot_of(NOW, "Preprod") == 86400 + (int(NOW.timestamp() * 1000) - 1655769600000) // 1000
    assert slot_of(NOW + timedelta(seconds=1), "Preprod") == slot_of(NOW, "Preprod") + 1


def test_slot_of_unknown_network():
    with pytest.raises(BuildTransactionError) as exc:
        slot_of(NOW, "Testnet")
    assert exc.value.name == "UnknownNetwork"


def test_to_ledger_value_groups_by_policy():
    value = to_ledger_value(Value(lovelace=3 * ADA, assets={UNIT: 2, "ab" * 28 + "42": 0}))
    assert value.coin == 3 * ADA
    policies = list(value.multi_asset.keys())
    assert [p.payload.hex() for p in policies] == ["ab" * 28]
    assert sum(len(assets) for assets in value.multi_asset.values()) == 1


def test_key_hashes_skip_scripts():
    hashes = key_hashes([MOS_ADDRESS, MARLOWE_ADDRESS, MOS_ADDRESS])
    assert len(hashes) == 1


class TestWitnessCount:
    def test_wallet_key_counted_once_when_also_required(self):
        assert witness_count(skeleton([MOS_ADDRESS]), MOS_ADDRESS) == 1

    def test_no_required_signers(self):
        assert witness_count(skeleton([]), MOS_ADDRESS) == 1

    def test_same_key_under_duplicate_entries(self):
        assert witness_count(skeleton([MOS_ADDRESS, MOS_ADDRESS]), MOS_ADDRESS) == 1


class TestFees:
    def test_execution_fee_rounds_up(self, params, settings):
        # 12e6 * 0.0577 + 6e9 * 0.0000721
        assert execution_fee(params, settings) == 692_400 + 432_600

    def test_each_witness_costs_its_bytes(self, params, settings):
        one = min_fee(params, settings, 500, 1)
        two = min_fee(params, settings, 500, 2)
        assert two - one == params.min_fee_a * VKEY_WITNESS_SIZE

    def test_reference_script_bytes_are_charged(self, params, settings):
        params = params.model_copy(update={"min_fee_ref_script_cost_per_byte": 15})
        settings = settings.model_copy(update={"reference_script_size": 1000})
        base = min_fee(params.model_copy(update={"min_fee_ref_script_cost_per_byte": 0}), settings, 500, 1)
        assert min_fee(params, settings, 500, 1) - base == 15_000


class TestAssemble:
    def test_serializes_balanced_body(self, params, settings):
        funding = [make_utxo(tx_hash="aa" * 32, index=0, lovelace=20 * ADA)]
        collateral = [make_utxo(tx_hash="aa" * 32, index=1, lovelace=6 * ADA)]
        change = TxOutput(address=MOS_ADDRESS, value=Value(lovelace=19 * ADA, assets={UNIT: 1}))
        bridge = TxOutRef(tx_hash="cd" * 32, index=0)
        sk = skeleton(references=[bridge])

        assembled = assemble_transaction(sk, funding, collateral, change, 1_000_000, params, settings, "Preprod")

        tx = Transaction.from_cbor(assembled.cbor_hex)
        body = tx.transaction_body
        assert assembled.size == len(assembled.cbor_hex) // 2
        assert assembled.tx_id == body.id.payload.hex()
        assert body.fee == 1_000_000
        assert body.ttl == slot_of(sk.valid_until, "Preprod")
        assert body.validity_start == slot_of(sk.valid_from, "Preprod")
        assert len(body.outputs) == 2
        assert [i.transaction_id.payload.hex() for i in body.reference_inputs] == ["cd" * 32]
        assert len(body.required_signers) == 1
        assert body.script_data_hash is not None
        assert [i.transaction_id.payload.hex() for i in body.collateral] == ["aa" * 32]

    def test_redeemer_points_at_script_input(self, params, settings):
        # inputs are ordered by (tx hash, index); "aa" sorts before the script input's "ee"
        funding = [make_utxo(tx_hash="aa" * 32, index=0, lovelace=20 * ADA)]
        change = TxOutput(address=MOS_ADDRESS, value=Value(lovelace=19 * ADA))
        assembled = assemble_transaction(skeleton(), funding, funding, change, 1_000_000, params, settings, "Preprod")

        tx = Transaction.from_cbor(assembled.cbor_hex)
        inputs = [i.transaction_id.payload.hex() for i in tx.transaction_body.inputs]
        redeemer = tx.transaction_witness_set.redeemer[0]
        assert inputs[redeemer.index] == "ee" * 32
        assert (redeemer.ex_units.mem, redeemer.ex_units.steps) == (settings.ex_units_mem, settings.ex_units_steps)

    def test_invalid_address_is_a_build_error(self, params, settings):
        change = TxOutput(address="addr_test1notbech32", value=Value(lovelace=ADA))
        with pytest.raises(BuildTransactionError) as exc:
            assemble_transaction(skeleton(), [], [], change, 0, params, settings, "Preprod")
        assert exc.value.name == "InvalidTransaction"
