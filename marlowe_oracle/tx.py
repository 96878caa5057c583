"""Transaction builder: apply requests to submitted transactions.

Stages, per request: locate the contract output, compute the next datum with
the apply service, build the skeleton, balance (sequentially, for the whole
batch), sign, submit. A request that fails at any stage is logged and
dropped; the rest of the batch carries on.
"""

import asyncio
import logging

from .apply import ApplyService
from .balance import FundingPool, balance_batch
from .config import MOSConfig
from .errors import BuildTransactionError, MOSError, RequestError
from .runtime import RuntimeClient
from .types import (
    ApplyRequest,
    ApplyResult,
    BalancedTransaction,
    SignedTransaction,
    TransactionSkeleton,
    TxOutput,
    TxOutRef,
    Utxo,
)
from .wallet import Wallet

logger = logging.getLogger(__name__)


async def locate_contract(runtime: RuntimeClient, wallet: Wallet, request: ApplyRequest) -> Utxo:
    """Current output of the contract; raises ``BuildTransactionError`` if it has moved on."""
    try:
        details = await runtime.get_contract(request.contract_id)
    except RequestError as e:
        if e.is_not_found:
            raise BuildTransactionError("ContractNotFound", request.contract_id) from e
        raise
    if details.utxo is None:
        raise BuildTransactionError("ContractClosed", f"{request.contract_id} has no current output")

    utxos = await wallet.utxos_by_ref([details.utxo])
    if not utxos:
        raise BuildTransactionError("ContractOutputSpent", f"{details.utxo} is no longer unspent")
    if utxos[0].datum is None:
        raise BuildTransactionError("MissingDatum", f"{details.utxo} carries no inline datum")
    return utxos[0]


def build_skeleton(
    request: ApplyRequest,
    contract_utxo: Utxo,
    result: ApplyResult,
    script_reference: TxOutRef | None = None,
) -> TransactionSkeleton:
    """Spend the contract output and recreate it with the new datum and the same value."""
    signers = [i.choice_id.choice_owner.address for i in request.inputs if i.choice_id.choice_owner.address]
    references = [u.ref for u in request.reference_utxos]
    if script_reference is not None:
        references.append(script_reference)

    return TransactionSkeleton(
        contract_id=request.contract_id,
        script_input=contract_utxo,
        redeemer=result.redeemer,
        outputs=[TxOutput(address=contract_utxo.address, value=contract_utxo.value, datum=result.new_datum)],
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        required_signers=list(dict.fromkeys(signers)),
        reference_inputs=list(dict.fromkeys(references)),
    )


async def prepare_skeleton(
    request: ApplyRequest,
    contract_utxo: Utxo,
    apply_service: ApplyService,
    config: MOSConfig,
) -> TransactionSkeleton:
    result = await apply_service.apply(contract_utxo.datum, request.inputs, request.valid_from, request.valid_until)
    if result.payments:
        raise BuildTransactionError(
            "PaymentsNotAllowed",
            f"{request.contract_id} would release {len(result.payments)} payments; needs manual review",
        )
    return build_skeleton(request, contract_utxo, result, config.marlowe_reference_utxo)


async def sign_and_submit(wallet: Wallet, tx: BalancedTransaction) -> str:
    signed: SignedTransaction = await wallet.sign(tx)
    tx_id = await wallet.submit(signed)
    logger.info("[%s] Submitted %s", tx.skeleton.contract_id, tx_id)
    return tx_id


async def build_and_submit(
    apply_requests: list[ApplyRequest],
    runtime: RuntimeClient,
    wallet: Wallet,
    apply_service: ApplyService,
    config: MOSConfig,
    dry_run: bool = False,
) -> list[str]:
    """Advance every contract in ``apply_requests``; returns submitted transaction ids.

    Provider failures while locating contracts propagate; everything else
    drops only the request concerned.
    """
    if not apply_requests:
        return []

    located: list[tuple[ApplyRequest, Utxo]] = []
    for request in apply_requests:
        try:
            located.append((request, await locate_contract(runtime, wallet, request)))
        except BuildTransactionError as e:
            logger.info("[%s] Dropped: %s: %s", request.contract_id, e.name, e.message)

    skeletons: list[TransactionSkeleton] = []
    for request, contract_utxo in located:
        try:
            skeletons.append(await prepare_skeleton(request, contract_utxo, apply_service, config))
        except MOSError as e:
            logger.warning("[%s] Dropped: %s: %s", request.contract_id, e.name, e.message)
        except Exception:
            logger.exception("[%s] Dropped: unexpected error while preparing", request.contract_id)

    if not skeletons:
        return []

    pool = FundingPool.of(await wallet.wallet_utxos())
    params = await wallet.protocol_parameters()
    balanced, _ = balance_batch(skeletons, pool, params, config.balance, wallet.address, wallet.network)

    if dry_run:
        for tx in balanced:
            logger.info("[%s] Dry run, not submitting: %s", tx.skeleton.contract_id, tx.model_dump_json())
        return []

    results = await asyncio.gather(*(sign_and_submit(wallet, tx) for tx in balanced), return_exceptions=True)

    submitted: list[str] = []
    for tx, result in zip(balanced, results):
        if isinstance(result, MOSError):
            logger.error("[%s] Submission failed: %s: %s", tx.skeleton.contract_id, result.name, result.message)
        elif isinstance(result, BaseException):
            logger.error("[%s] Submission failed: %r", tx.skeleton.contract_id, result)
        else:
            submitted.append(result)
    return submitted
