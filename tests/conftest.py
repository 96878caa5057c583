"""Shared fixtures for Marlowe Oracle Service tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from marlowe_oracle.config import MOSConfig
from marlowe_oracle.datum import Constr, encode_plutus
from marlowe_oracle.types import (
    Bound,
    ChoiceId,
    OracleRequest,
    Party,
    ProtocolParameters,
    TxOutRef,
    Utxo,
    Value,
)

MOS_ADDRESS = "addr_test1vzuqvqzcnuy9pmrh2sy7tjucufmpwh8gzssz7v6scn0e04gxdvna9"
MARLOWE_ADDRESS = "addr_test1wzn5ee2qaqvly3hx7e0nk3vhm240n5muq3plhjcnvx9ppjgf62u6a"
BRIDGE_ADDRESS = "addr_test1wzbridge"
FEED_ADDRESS = "addr_test1wzfeed"
CHARLI3_POLICY = "1116903479e7320b8e4592207aaebf627898267fcd80e2d9646cbf07"
CHARLI3_TOKEN = "4f7261636c6546656564"
ORCFAX_POLICY = "104d51dd927761bf5d50d32e1ede4b2cff477d475fe32f4f780a4b21"
ROLE_POLICY = "aa" * 28
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


def make_utxo(
    tx_hash: str = "ab" * 32,
    index: int = 0,
    lovelace: int = 10_000_000,
    assets: dict[str, int] | None = None,
    address: str = MOS_ADDRESS,
    datum: str | None = None,
) -> Utxo:
    return Utxo(
        ref=TxOutRef(tx_hash=tx_hash, index=index),
        address=address,
        value=Value(lovelace=lovelace, assets=assets or {}),
        datum=datum,
    )


def charli3_datum(price: int, valid_from: int, valid_through: int) -> bytes:
    return encode_plutus(Constr(0, [Constr(2, [{0: price, 1: valid_from, 2: valid_through}])]))


def orcfax_datum(name: str, significand: int, exponent: int, valid_from: int, valid_through: int) -> bytes:
    return encode_plutus(Constr(0, [{
        b"@context": b"https://schema.org",
        b"type": b"PropertyValue",
        b"name": name.encode(),
        b"value": [Constr(3, [significand, exponent])],
        b"valueReference": [
            {b"@type": b"PropertyValue", b"name": b"validFrom", b"value": valid_from},
            {b"@type": b"PropertyValue", b"name": b"validThrough", b"value": valid_through},
        ],
    }]))


def make_request(
    contract_id: str = "c1" * 32 + "#1",
    choice_name: str = "ADAUSD",
    bounds: list[tuple[int, int]] | None = None,
    owner: Party | None = None,
    bridge_utxo: Utxo | None = None,
) -> OracleRequest:
    return OracleRequest(
        contract_id=contract_id,
        choice_id=ChoiceId(choice_name=choice_name, choice_owner=owner or Party(address=MOS_ADDRESS)),
        bounds=[Bound(from_=lo, to=hi) for lo, hi in (bounds or [(0, 10**12)])],
        valid_from=NOW - timedelta(minutes=5),
        valid_until=NOW + timedelta(minutes=5),
        role_token_minting_policy_id=ROLE_POLICY,
        bridge_utxo=bridge_utxo,
    )


@pytest.fixture
def config():
    return MOSConfig.model_validate({
        "delay": 60000,
        "resolve_methods": {
            "address": {"choice_names": ["ADAUSD", "USDADA"]},
            "oracles": [
                {
                    "kind": "charli3",
                    "role_name": "Charli3 Oracle",
                    "bridge_address": BRIDGE_ADDRESS,
                    "bridge_reference": "cd" * 32 + "#0",
                    "feed_address": FEED_ADDRESS,
                    "feed_policy_id": CHARLI3_POLICY,
                    "feed_token_name": CHARLI3_TOKEN,
                },
                {
                    "kind": "orcfax",
                    "role_name": "Orcfax Oracle",
                    "bridge_address": BRIDGE_ADDRESS + "2",
                    "bridge_reference": "ce" * 32 + "#0",
                    "feed_address": FEED_ADDRESS,
                    "feed_policy_id": ORCFAX_POLICY,
                },
            ],
        },
    })


@pytest.fixture
def params():
    return ProtocolParameters(
        min_fee_a=44,
        min_fee_b=155381,
        price_mem=0.0577,
        price_step=0.0000721,
        plutus_v2_cost_model=[1000 + i for i in range(175)],
    )


@pytest.fixture
def wallet():
    """Wallet collaborator with every call mocked."""
    w = AsyncMock()
    w.address = MOS_ADDRESS
    w.network = "Preprod"
    return w
