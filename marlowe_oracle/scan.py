"""Contract scanner: find the choices this service may answer.

A choice is answerable when its owner is the service address and its name is
allow-listed, or when its owner is the role token of a configured oracle and
the oracle's bridge address holds that role token.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .config import MOSConfig, OracleMethod
from .errors import RequestError, ScanError
from .runtime import RuntimeClient
from .sources import oracle_kind, source_for
from .types import ApplicableChoice, ContractHeader, OracleRequest, Utxo
from .wallet import Wallet

logger = logging.getLogger(__name__)

# Submission may lag the scan; inputs older than this are not trusted.
VALIDITY_MARGIN = timedelta(minutes=5)


def _request(
    header: ContractHeader,
    choice: ApplicableChoice,
    valid_from: datetime,
    valid_until: datetime,
    bridge_utxo: Utxo | None = None,
) -> OracleRequest:
    return OracleRequest(
        contract_id=header.contract_id,
        choice_id=choice.for_choice,
        bounds=choice.can_choose_between,
        valid_from=valid_from,
        valid_until=valid_until,
        role_token_minting_policy_id=header.role_token_minting_policy_id,
        bridge_utxo=bridge_utxo,
    )


def find_bridge_utxo(bridge_utxos: list[Utxo], header: ContractHeader, oracle: OracleMethod) -> Utxo | None:
    """The bridge output holding this contract's ``oracle.role_name`` token."""
    unit = header.role_token_minting_policy_id + oracle.role_name_hex
    for utxo in bridge_utxos:
        if utxo.value.quantity(unit) > 0:
            return utxo
    return None


async def get_active_contracts(
    runtime: RuntimeClient,
    config: MOSConfig,
    wallet: Wallet,
    now: datetime | None = None,
) -> list[OracleRequest]:
    """Return one ``OracleRequest`` per answerable choice.

    Raises ``ScanError(fatal=True)`` when the runtime reports the contract
    listing itself as not found; every other failure is logged and skipped.
    """
    methods = config.resolve_methods
    # Whole seconds, so the interval maps onto slots exactly.
    now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    valid_from, valid_until = now - VALIDITY_MARGIN, now + VALIDITY_MARGIN

    party_addresses = [wallet.address] if methods.address else []
    party_addresses += [o.bridge_address for o in methods.oracles]
    parties = party_addresses[:1] if methods.address else []
    parties += [o.role_name for o in methods.oracles]

    try:
        headers = await runtime.get_all_contracts(party_addresses, config.tags)
    except RequestError as e:
        if e.is_not_found:
            raise ScanError("ContractsNotFound", e.message, fatal=True) from e
        logger.error("Contract listing failed: %s", e)
        return []
    logger.info("Scanning %d contracts", len(headers))

    results = await asyncio.gather(
        *(runtime.get_next_choices(h.contract_id, valid_from, valid_until, parties) for h in headers),
        return_exceptions=True,
    )

    requests: list[OracleRequest] = []
    pending: dict[str, list[tuple[ContractHeader, ApplicableChoice]]] = {}

    for header, result in zip(headers, results):
        if isinstance(result, BaseException):
            logger.warning("[%s] Skipping contract, next step query failed: %s", header.contract_id, result)
            continue
        for choice in result:
            owner = choice.for_choice.choice_owner
            name = choice.for_choice.choice_name
            if owner.address is not None:
                if methods.address and owner.address == wallet.address and name in methods.address.choice_names:
                    requests.append(_request(header, choice, valid_from, valid_until))
                continue
            oracle = methods.oracle_for_role(owner.role_token)
            if oracle is None:
                continue
            source = source_for(name)
            if source is None or oracle_kind(source) != oracle.kind:
                logger.info(
                    "[%s] %s is not a %s feed, not answering it as %r",
                    header.contract_id, name, oracle.kind, oracle.role_name,
                )
            else:
                pending.setdefault(oracle.role_name, []).append((header, choice))

    for oracle in methods.oracles:
        matches = pending.get(oracle.role_name)
        if not matches:
            continue
        try:
            bridge_utxos = await wallet.utxos_at(oracle.bridge_address)
        except RequestError as e:
            logger.warning("[%s] Bridge lookup failed, skipping %d choices: %s", oracle.role_name, len(matches), e)
            continue
        for header, choice in matches:
            bridge_utxo = find_bridge_utxo(bridge_utxos, header, oracle)
            if bridge_utxo is None:
                logger.info(
                    "[%s] Bridge does not hold role %r yet, skipping %s",
                    header.contract_id, oracle.role_name, choice.for_choice.choice_name,
                )
                continue
            requests.append(_request(header, choice, valid_from, valid_until, bridge_utxo))

    logger.info("Found %d oracle requests", len(requests))
    return requests
