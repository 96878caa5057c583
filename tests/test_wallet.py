"""Tests for marlowe_oracle.wallet — Blockfrost and Maestro adapters (mocked HTTP)."""

import httpx
import pytest
import respx

from marlowe_oracle.errors import RequestError
from marlowe_oracle.types import (
    BalancedTransaction,
    SignedTransaction,
    TransactionSkeleton,
    TxOutput,
    TxOutRef,
    Value,
)
from marlowe_oracle.wallet import PAGE_SIZE, BlockfrostWallet, MaestroWallet, parse_amount

from conftest import MARLOWE_ADDRESS, MOS_ADDRESS, NOW, make_utxo

BLOCKFROST = "http://blockfrost.test/api/v0"
MAESTRO = "http://maestro.test/v1"
SIGNER = "http://signer.test/sign"


def bf_utxo(tx_hash: str, index: int, lovelace: int, address: str = MOS_ADDRESS, **extra) -> dict:
    return {
        "address": address,
        "tx_hash": tx_hash,
        "output_index": index,
        "amount": [{"unit": "lovelace", "quantity": str(lovelace)}],
        **extra,
    }


def make_wallet(client: httpx.AsyncClient) -> BlockfrostWallet:
    return BlockfrostWallet(client, BLOCKFROST, "preprodKEY", MOS_ADDRESS, SIGNER)


def test_parse_amount():
    value = parse_amount([
        {"unit": "lovelace", "quantity": "2000000"},
        {"unit": "aa" * 28 + "41", "quantity": "3"},
    ])
    assert value.lovelace == 2_000_000
    assert value.assets == {"aa" * 28 + "41": 3}


@pytest.mark.asyncio
async def test_wallet_utxos_paged():
    full_page = [bf_utxo("aa" * 32, i, 1_000_000) for i in range(PAGE_SIZE)]
    with respx.mock:
        route = respx.get(f"{BLOCKFROST}/addresses/{MOS_ADDRESS}/utxos").mock(side_effect=[
            httpx.Response(200, json=full_page),
            httpx.Response(200, json=[bf_utxo("bb" * 32, 0, 5_000_000, inline_datum="d87980")]),
        ])
        async with httpx.AsyncClient() as client:
            utxos = await make_wallet(client).wallet_utxos()

    assert len(utxos) == PAGE_SIZE + 1
    assert utxos[-1].datum == "d87980"
    assert route.calls[0].request.headers["project_id"] == "preprodKEY"
    assert route.calls[1].request.url.params["page"] == "2"


@pytest.mark.asyncio
async def test_unused_address_has_no_utxos():
    with respx.mock:
        respx.get(f"{BLOCKFROST}/addresses/{MOS_ADDRESS}/utxos").mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient() as client:
            assert await make_wallet(client).wallet_utxos() == []


@pytest.mark.asyncio
async def test_utxos_by_ref_skips_spent_and_unknown():
    outputs = {"outputs": [
        bf_utxo("cc" * 32, 0, 1_000_000, address=MARLOWE_ADDRESS, inline_datum="d87980"),
        bf_utxo("cc" * 32, 1, 1_000_000, consumed_by_tx="dd" * 32),
        bf_utxo("cc" * 32, 2, 1_000_000),
    ]}
    with respx.mock:
        respx.get(f"{BLOCKFROST}/txs/{'cc' * 32}/utxos").mock(return_value=httpx.Response(200, json=outputs))
        respx.get(f"{BLOCKFROST}/txs/{'ee' * 32}/utxos").mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient() as client:
            utxos = await make_wallet(client).utxos_by_ref([
                TxOutRef(tx_hash="cc" * 32, index=0),
                TxOutRef(tx_hash="cc" * 32, index=1),
                TxOutRef(tx_hash="ee" * 32, index=0),
            ])

    assert [str(u.ref) for u in utxos] == ["cc" * 32 + "#0"]
    assert utxos[0].address == MARLOWE_ADDRESS


@pytest.mark.asyncio
async def test_utxo_by_unit_requires_single_holder():
    unit = "11" * 28 + "4f7261636c6546656564"
    with respx.mock:
        respx.get(f"{BLOCKFROST}/assets/{unit}/addresses").mock(return_value=httpx.Response(200, json=[
            {"address": "addr_test1feed", "quantity": "1"},
            {"address": "addr_test1other", "quantity": "1"},
        ]))
        async with httpx.AsyncClient() as client:
            with pytest.raises(RequestError) as exc:
                await make_wallet(client).utxo_by_unit(unit)
    assert exc.value.name == "AssetNotUnique"


@pytest.mark.asyncio
async def test_utxo_by_unit():
    unit = "11" * 28 + "4f7261636c6546656564"
    holder = bf_utxo("ff" * 32, 3, 2_000_000, address="addr_test1feed", inline_datum="d87980")
    holder["amount"].append({"unit": unit, "quantity": "1"})
    with respx.mock:
        respx.get(f"{BLOCKFROST}/assets/{unit}/addresses").mock(
            return_value=httpx.Response(200, json=[{"address": "addr_test1feed", "quantity": "1"}])
        )
        respx.get(f"{BLOCKFROST}/addresses/addr_test1feed/utxos/{unit}").mock(
            return_value=httpx.Response(200, json=[holder])
        )
        async with httpx.AsyncClient() as client:
            utxo = await make_wallet(client).utxo_by_unit(unit)
    assert utxo.value.quantity(unit) == 1
    assert utxo.datum == "d87980"


@pytest.mark.asyncio
async def test_protocol_parameters():
    with respx.mock:
        respx.get(f"{BLOCKFROST}/epochs/latest/parameters").mock(return_value=httpx.Response(200, json={
            "min_fee_a": 44, "min_fee_b": 155381, "coins_per_utxo_size": "4310", "max_tx_size": 16384,
            "collateral_percent": 150, "price_mem": 0.0577, "price_step": 0.0000721,
            "cost_models_raw": {"PlutusV1": [1, 2], "PlutusV2": [205665, 812, 1]},
        }))
        async with httpx.AsyncClient() as client:
            params = await make_wallet(client).protocol_parameters()
    assert (params.min_fee_a, params.min_fee_b, params.coins_per_utxo_size) == (44, 155381, 4310)
    assert params.plutus_v2_cost_model == [205665, 812, 1]
    assert params.price_step == 0.0000721


def balanced_tx() -> BalancedTransaction:
    script_input = make_utxo(tx_hash="ee" * 32, address=MARLOWE_ADDRESS, datum="d87980")
    skeleton = TransactionSkeleton(
        contract_id="c1#1",
        script_input=script_input,
        redeemer="d87980",
        outputs=[],
        valid_from=NOW,
        valid_until=NOW,
    )
    return BalancedTransaction(
        skeleton=skeleton,
        funding_inputs=[make_utxo(index=1)],
        collateral=[make_utxo(index=2)],
        change=TxOutput(address=MOS_ADDRESS, value=Value(lovelace=1_000_000)),
        fee=200_000,
        tx_id="77" * 32,
        cbor_hex="84a400",
    )


@pytest.mark.asyncio
async def test_sign_sends_unsigned_cbor():
    with respx.mock:
        route = respx.post(SIGNER).mock(return_value=httpx.Response(200, json="84a400a1"))
        async with httpx.AsyncClient() as client:
            signed = await make_wallet(client).sign(balanced_tx())
    assert signed == SignedTransaction(contract_id="c1#1", tx_id="77" * 32, cbor_hex="84a400a1")
    assert route.calls.last.request.content == b'"84a400"'


@pytest.mark.asyncio
async def test_sign_rejects_non_hex_answer():
    with respx.mock:
        respx.post(SIGNER).mock(return_value=httpx.Response(200, json="An unexpected error occurred"))
        async with httpx.AsyncClient() as client:
            with pytest.raises(RequestError) as exc:
                await make_wallet(client).sign(balanced_tx())
    assert exc.value.name == "SignTx"


@pytest.mark.asyncio
async def test_submit_sends_cbor():
    with respx.mock:
        route = respx.post(f"{BLOCKFROST}/tx/submit").mock(return_value=httpx.Response(200, json="t1"))
        async with httpx.AsyncClient() as client:
            tx_id = await make_wallet(client).submit(SignedTransaction(contract_id="c1#1", tx_id="t1", cbor_hex="84a0"))
    assert tx_id == "t1"
    request = route.calls.last.request
    assert request.content == bytes.fromhex("84a0")
    assert request.headers["Content-Type"] == "application/cbor"


@pytest.mark.asyncio
async def test_submit_rejection_carries_body():
    with respx.mock:
        respx.post(f"{BLOCKFROST}/tx/submit").mock(return_value=httpx.Response(400, text="BadInputsUTxO"))
        async with httpx.AsyncClient() as client:
            with pytest.raises(RequestError) as exc:
                await make_wallet(client).submit(SignedTransaction(contract_id="c1#1", tx_id="t1", cbor_hex="84a0"))
    assert exc.value.status == 400
    assert "BadInputsUTxO" in exc.value.body


# --- Maestro ---


def maestro_wallet(client: httpx.AsyncClient) -> MaestroWallet:
    return MaestroWallet(client, MAESTRO, "maestroKEY", MOS_ADDRESS, SIGNER, "Preprod")


def mx_utxo(tx_hash: str, index: int, lovelace: int, address: str = MOS_ADDRESS, datum: str | None = None) -> dict:
    return {
        "tx_hash": tx_hash,
        "index": index,
        "address": address,
        "assets": [{"unit": "lovelace", "amount": lovelace}],
        "datum": {"type": "inline", "hash": "00" * 32, "bytes": datum} if datum else None,
        "reference_script": None,
    }


@pytest.mark.asyncio
async def test_maestro_utxos_follow_cursor():
    with respx.mock:
        route = respx.get(f"{MAESTRO}/addresses/{MOS_ADDRESS}/utxos").mock(side_effect=[
            httpx.Response(200, json={"data": [mx_utxo("aa" * 32, 0, 1_000_000)], "next_cursor": "next"}),
            httpx.Response(200, json={"data": [mx_utxo("bb" * 32, 1, 2_000_000, datum="d87980")], "next_cursor": None}),
        ])
        async with httpx.AsyncClient() as client:
            utxos = await maestro_wallet(client).wallet_utxos()

    assert [str(u.ref) for u in utxos] == ["aa" * 32 + "#0", "bb" * 32 + "#1"]
    assert utxos[1].datum == "d87980"
    assert utxos[1].value.lovelace == 2_000_000
    assert route.calls[0].request.headers["api-key"] == "maestroKEY"
    assert route.calls[1].request.url.params["cursor"] == "next"


@pytest.mark.asyncio
async def test_maestro_utxos_by_ref_posts_refs():
    ref = TxOutRef(tx_hash="cc" * 32, index=0)
    with respx.mock:
        route = respx.post(f"{MAESTRO}/outputs").mock(return_value=httpx.Response(200, json={
            "data": [mx_utxo("cc" * 32, 0, 3_000_000, address=MARLOWE_ADDRESS, datum="d87980")],
        }))
        async with httpx.AsyncClient() as client:
            utxos = await maestro_wallet(client).utxos_by_ref([ref])

    assert utxos[0].ref == ref
    assert utxos[0].address == MARLOWE_ADDRESS
    assert route.calls.last.request.content.replace(b" ", b"") == f'["{ref}"]'.encode()


@pytest.mark.asyncio
async def test_maestro_utxo_by_unit():
    unit = "11" * 28 + "4f7261636c6546656564"
    holder = mx_utxo("ff" * 32, 3, 2_000_000, address="addr_test1feed", datum="d87980")
    holder["assets"].append({"unit": unit, "amount": 1})
    with respx.mock:
        respx.get(f"{MAESTRO}/assets/{unit}/addresses").mock(return_value=httpx.Response(200, json={
            "data": [{"address": "addr_test1feed", "amount": 1}], "next_cursor": None,
        }))
        route = respx.get(f"{MAESTRO}/addresses/addr_test1feed/utxos").mock(
            return_value=httpx.Response(200, json={"data": [holder], "next_cursor": None})
        )
        async with httpx.AsyncClient() as client:
            utxo = await maestro_wallet(client).utxo_by_unit(unit)

    assert utxo.value.quantity(unit) == 1
    assert route.calls.last.request.url.params["asset"] == unit


@pytest.mark.asyncio
async def test_maestro_protocol_parameters():
    with respx.mock:
        respx.get(f"{MAESTRO}/protocol-params").mock(return_value=httpx.Response(200, json={"data": {
            "min_fee_coefficient": 44,
            "min_fee_constant": {"ada": {"lovelace": 155381}},
            "max_transaction_size": {"bytes": 16384},
            "min_utxo_deposit_coefficient": 4310,
            "collateral_percentage": 150,
            "script_execution_prices": {"memory": "577/10000", "cpu": "721/10000000"},
            "plutus_cost_models": {"plutus_v1": [1], "plutus_v2": [205665, 812]},
        }}))
        async with httpx.AsyncClient() as client:
            params = await maestro_wallet(client).protocol_parameters()

    assert (params.min_fee_a, params.min_fee_b, params.max_tx_size) == (44, 155381, 16384)
    assert params.price_mem == pytest.approx(0.0577)
    assert params.plutus_v2_cost_model == [205665, 812]


@pytest.mark.asyncio
async def test_maestro_submit():
    with respx.mock:
        route = respx.post(f"{MAESTRO}/txmanager").mock(return_value=httpx.Response(202, text="t1"))
        async with httpx.AsyncClient() as client:
            tx_id = await maestro_wallet(client).submit(SignedTransaction(contract_id="c1#1", tx_id="t1", cbor_hex="84a0"))
    assert tx_id == "t1"
    request = route.calls.last.request
    assert request.content == bytes.fromhex("84a0")
    assert request.headers["api-key"] == "maestroKEY"
