"""Funding selection and sequential batch balancing.

Transactions of one batch are balanced against a single ``FundingPool``.
Balancing a transaction returns a new pool without the inputs it consumed,
and the next transaction is balanced against that pool, so no funding input
is ever spent by two transactions of the same batch.

Collateral is not consumed by a successful transaction. It is reserved in
the pool instead: reserved outputs may back further transactions as
collateral but are never selected as funding inputs.

Fees are computed from the serialized transaction (see ``ledger``), so the
fee written into the body always covers the body that is submitted.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import BalanceSettings
from .errors import BuildTransactionError
from .ledger import assemble_transaction, min_fee, witness_count
from .types import (
    BalancedTransaction,
    ProtocolParameters,
    TransactionSkeleton,
    TxOutput,
    TxOutRef,
    Utxo,
    Value,
)

logger = logging.getLogger(__name__)

# Fee re-estimation normally settles in two rounds.
MAX_FEE_ROUNDS = 10


@dataclass(frozen=True)
class FundingPool:
    """Wallet outputs still available to the current batch."""
    utxos: tuple[Utxo, ...]
    reserved: frozenset[TxOutRef] = field(default_factory=frozenset)

    @classmethod
    def of(cls, utxos: Iterable[Utxo]) -> "FundingPool":
        return cls(tuple(utxos))

    def __len__(self) -> int:
        return len(self.utxos)

    @property
    def refs(self) -> set[TxOutRef]:
        return {u.ref for u in self.utxos}

    def spendable(self) -> list[Utxo]:
        """Funding candidates, largest lovelace first."""
        free = [u for u in self.utxos if u.ref not in self.reserved]
        return sorted(free, key=lambda u: u.value.lovelace, reverse=True)

    def without(self, refs: Iterable[TxOutRef]) -> "FundingPool":
        gone = set(refs)
        return FundingPool(tuple(u for u in self.utxos if u.ref not in gone), self.reserved - gone)

    def reserve(self, refs: Iterable[TxOutRef]) -> "FundingPool":
        return FundingPool(self.utxos, self.reserved | frozenset(refs))


def _asset_diff(have: dict[str, int], spend: dict[str, int]) -> dict[str, int]:
    left = dict(have)
    for unit, qty in spend.items():
        left[unit] = left.get(unit, 0) - qty
        if left[unit] < 0:
            raise BuildTransactionError("InsufficientAssets", f"missing {-left[unit]} of {unit}")
    return {unit: qty for unit, qty in left.items() if qty}


def select_collateral(pool: FundingPool, settings: BalanceSettings) -> Utxo:
    """Reuse reserved collateral when possible, else the smallest sufficient ADA-only output."""
    eligible = [u for u in pool.utxos if u.value.is_ada_only and u.value.lovelace >= settings.collateral_amount]
    reserved = [u for u in eligible if u.ref in pool.reserved]
    if reserved:
        return reserved[0]
    if not eligible:
        raise BuildTransactionError(
            "NoCollateral", f"no ADA-only output of at least {settings.collateral_amount} lovelace"
        )
    return min(eligible, key=lambda u: u.value.lovelace)


def balance_transaction(
    skeleton: TransactionSkeleton,
    pool: FundingPool,
    params: ProtocolParameters,
    settings: BalanceSettings,
    change_address: str,
    network: str,
) -> tuple[BalancedTransaction, FundingPool]:
    """Balance ``skeleton`` from ``pool``; returns the transaction and the remaining pool."""
    collateral = select_collateral(pool, settings)
    pool = pool.reserve([collateral.ref])
    witnesses = witness_count(skeleton, change_address)

    candidates = pool.spendable()
    selected: list[Utxo] = []
    out_lovelace = sum(o.value.lovelace for o in skeleton.outputs)
    out_assets = sum((o.value for o in skeleton.outputs), Value()).assets

    fee = 0
    for _ in range(MAX_FEE_ROUNDS * (len(candidates) + 1)):
        total_in = sum((u.value for u in selected), skeleton.script_input.value)
        change_assets = _asset_diff(total_in.assets, out_assets)
        change_lovelace = total_in.lovelace - out_lovelace - fee

        if change_lovelace < settings.min_change:
            if not candidates:
                raise BuildTransactionError(
                    "InsufficientFunds",
                    f"{skeleton.contract_id}: short {settings.min_change - change_lovelace} lovelace",
                )
            selected.append(candidates.pop(0))
            continue

        change = TxOutput(address=change_address, value=Value(lovelace=change_lovelace, assets=change_assets))
        assembled = assemble_transaction(skeleton, selected, [collateral], change, fee, params, settings, network)
        needed = min_fee(params, settings, assembled.size, witnesses)
        if needed <= fee:
            break
        fee = needed
    else:
        raise BuildTransactionError("FeeDidNotConverge", skeleton.contract_id)

    if assembled.size > params.max_tx_size:
        raise BuildTransactionError(
            "TransactionTooLarge", f"{skeleton.contract_id}: {assembled.size} > {params.max_tx_size} bytes"
        )
    if collateral.value.lovelace * 100 < fee * params.collateral_percent:
        raise BuildTransactionError(
            "InsufficientCollateral",
            f"{skeleton.contract_id}: {collateral.value.lovelace} lovelace cannot cover "
            f"{params.collateral_percent}% of fee {fee}",
        )

    tx = BalancedTransaction(
        skeleton=skeleton,
        funding_inputs=selected,
        collateral=[collateral],
        change=change,
        fee=fee,
        tx_id=assembled.tx_id,
        cbor_hex=assembled.cbor_hex,
    )
    return tx, pool.without(u.ref for u in selected)


def balance_batch(
    skeletons: list[TransactionSkeleton],
    pool: FundingPool,
    params: ProtocolParameters,
    settings: BalanceSettings,
    change_address: str,
    network: str,
) -> tuple[list[BalancedTransaction], FundingPool]:
    """Balance ``skeletons`` one after another; failures drop only their own transaction."""
    balanced: list[BalancedTransaction] = []
    for skeleton in skeletons:
        try:
            tx, pool = balance_transaction(skeleton, pool, params, settings, change_address, network)
        except BuildTransactionError as e:
            logger.warning("[%s] %s: %s", skeleton.contract_id, e.name, e.message)
            continue
        logger.info(
            "[%s] Balanced %s: fee=%d inputs=%s",
            skeleton.contract_id, tx.tx_id, tx.fee, [str(u.ref) for u in tx.funding_inputs],
        )
        balanced.append(tx)
    return balanced, pool
