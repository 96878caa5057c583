"""Cardano transaction assembly with pycardano.

The balancer decides inputs, collateral, change and fee; this module turns
those decisions into a serialized Babbage-era transaction: the Marlowe spend
redeemer with its execution budget, the script data hash over the chain's
PlutusV2 cost model, the validity interval in slots and the required
signers. Witnesses are added by the signing service.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction

from pycardano import (
    Address,
    CostModels,
    ExecutionUnits,
    MultiAsset,
    RawCBOR,
    Redeemer,
    RedeemerTag,
    Transaction,
    TransactionBody,
    TransactionId,
    TransactionInput,
    TransactionOutput,
    TransactionWitnessSet,
    VerificationKeyHash,
)
from pycardano import Value as LedgerValue
from pycardano.exception import PyCardanoException
from pycardano.utils import script_data_hash

from .config import BalanceSettings
from .errors import BuildTransactionError
from .types import ProtocolParameters, TransactionSkeleton, TxOutput, TxOutRef, Utxo, Value
from .utils import to_posix_ms

# (zero time in POSIX ms, zero slot); one slot per second after the zero point.
SLOT_CONFIG = {
    "Mainnet": (1596059091000, 4492800),
    "Preprod": (1655769600000, 86400),
    "Preview": (1666656000000, 0),
}
SLOT_LENGTH_MS = 1000

PLUTUS_V2 = 1
POLICY_ID_HEX_LENGTH = 56

# Serialized size of one vkey witness: [vkey(32), signature(64)] with headers.
VKEY_WITNESS_SIZE = 101
WITNESS_SET_OVERHEAD = 4


@dataclass(frozen=True)
class AssembledTransaction:
    tx_id: str
    cbor_hex: str
    size: int


def slot_of(moment: datetime, network: str) -> int:
    try:
        zero_time, zero_slot = SLOT_CONFIG[network]
    except KeyError:
        raise BuildTransactionError("UnknownNetwork", network) from None
    return zero_slot + (to_posix_ms(moment) - zero_time) // SLOT_LENGTH_MS


def to_ledger_value(value: Value) -> LedgerValue:
    assets: dict[bytes, dict[bytes, int]] = {}
    for unit, qty in sorted(value.assets.items()):
        if qty:
            policy, name = unit[:POLICY_ID_HEX_LENGTH], unit[POLICY_ID_HEX_LENGTH:]
            assets.setdefault(bytes.fromhex(policy), {})[bytes.fromhex(name)] = qty
    if not assets:
        return LedgerValue(value.lovelace)
    return LedgerValue(value.lovelace, MultiAsset.from_primitive(assets))


def to_ledger_input(ref: TxOutRef) -> TransactionInput:
    return TransactionInput(TransactionId(bytes.fromhex(ref.tx_hash)), ref.index)


def to_ledger_output(output: TxOutput) -> TransactionOutput:
    datum = RawCBOR(bytes.fromhex(output.datum)) if output.datum else None
    amount = output.value.lovelace if output.value.is_ada_only else to_ledger_value(output.value)
    return TransactionOutput(Address.from_primitive(output.address), amount, datum=datum)


def key_hashes(addresses: list[str]) -> list[VerificationKeyHash]:
    """Payment key hashes of ``addresses``; script addresses contribute none."""
    hashes = []
    for address in dict.fromkeys(addresses):
        part = Address.from_primitive(address).payment_part
        if isinstance(part, VerificationKeyHash):
            hashes.append(part)
    return hashes


def witness_count(skeleton: TransactionSkeleton, change_address: str) -> int:
    """Distinct key witnesses: the wallet's own key plus every required signer."""
    return len({h.payload for h in key_hashes([change_address, *skeleton.required_signers])})


def execution_fee(params: ProtocolParameters, settings: BalanceSettings) -> int:
    return math.ceil(
        Fraction(str(params.price_mem)) * settings.ex_units_mem
        + Fraction(str(params.price_step)) * settings.ex_units_steps
    )


def min_fee(params: ProtocolParameters, settings: BalanceSettings, tx_size: int, witnesses: int) -> int:
    """Linear size fee (witnesses included), execution budget and reference script cost."""
    size = tx_size + WITNESS_SET_OVERHEAD + VKEY_WITNESS_SIZE * witnesses
    reference_cost = math.ceil(
        Fraction(str(params.min_fee_ref_script_cost_per_byte)) * settings.reference_script_size
    )
    return params.min_fee_a * size + params.min_fee_b + execution_fee(params, settings) + reference_cost


def assemble_transaction(
    skeleton: TransactionSkeleton,
    funding_inputs: list[Utxo],
    collateral: list[Utxo],
    change: TxOutput,
    fee: int,
    params: ProtocolParameters,
    settings: BalanceSettings,
    network: str,
) -> AssembledTransaction:
    """Serialize one balanced transaction; raises ``BuildTransactionError`` on invalid parts."""
    if not params.plutus_v2_cost_model:
        raise BuildTransactionError("MissingCostModel", "protocol parameters carry no PlutusV2 cost model")

    try:
        refs = sorted([skeleton.script_input.ref, *(u.ref for u in funding_inputs)], key=lambda r: (r.tx_hash, r.index))
        redeemer = Redeemer(
            RawCBOR(bytes.fromhex(skeleton.redeemer)),
            ExecutionUnits(settings.ex_units_mem, settings.ex_units_steps),
        )
        redeemer.tag = RedeemerTag.SPEND
        redeemer.index = refs.index(skeleton.script_input.ref)
        cost_models = CostModels({PLUTUS_V2: dict(enumerate(params.plutus_v2_cost_model))})

        body = TransactionBody(
            inputs=[to_ledger_input(r) for r in refs],
            outputs=[to_ledger_output(o) for o in [*skeleton.outputs, change]],
            fee=fee,
            ttl=slot_of(skeleton.valid_until, network),
            validity_start=slot_of(skeleton.valid_from, network),
            script_data_hash=script_data_hash([redeemer], [], cost_models),
            collateral=[to_ledger_input(u.ref) for u in collateral],
            required_signers=key_hashes(skeleton.required_signers) or None,
            reference_inputs=[to_ledger_input(r) for r in skeleton.reference_inputs] or None,
        )
        tx = Transaction(body, TransactionWitnessSet(redeemer=[redeemer]))
        cbor_hex = tx.to_cbor_hex()
    except (ValueError, TypeError, PyCardanoException) as e:
        raise BuildTransactionError("InvalidTransaction", f"{skeleton.contract_id}: {e}") from e

    return AssembledTransaction(tx_id=body.id.payload.hex(), cbor_hex=cbor_hex, size=len(cbor_hex) // 2)
