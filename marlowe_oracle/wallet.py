"""Wallet and ledger provider adapters.

``Wallet`` is the interface the pipeline depends on. ``BlockfrostWallet``
and ``MaestroWallet`` implement the ledger queries and submission against
their provider and share ``HttpWallet``'s signing, which delegates to an
external signing service so keys never enter this process.
"""

import logging
from fractions import Fraction
from typing import Any, Protocol

import httpx

from .errors import RequestError
from .types import BalancedTransaction, ProtocolParameters, SignedTransaction, TxOutRef, Utxo, Value
from .utils import check_response, wrap_transport_error

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
PAGE_SIZE = 100


class Wallet(Protocol):
    address: str
    network: str

    async def utxos_by_ref(self, refs: list[TxOutRef]) -> list[Utxo]:
        ...

    async def utxos_at(self, address: str, unit: str | None = None) -> list[Utxo]:
        ...

    async def utxo_by_unit(self, unit: str) -> Utxo:
        ...

    async def wallet_utxos(self) -> list[Utxo]:
        ...

    async def protocol_parameters(self) -> ProtocolParameters:
        ...

    async def sign(self, tx: BalancedTransaction) -> SignedTransaction:
        ...

    async def submit(self, tx: SignedTransaction) -> str:
        ...


def parse_amount(amount: list[dict[str, Any]], qty_key: str = "quantity") -> Value:
    """Convert provider ``[{unit, quantity}]`` lists into a ``Value``."""
    lovelace = 0
    assets: dict[str, int] = {}
    for entry in amount:
        qty = int(entry[qty_key])
        if entry["unit"] == "lovelace":
            lovelace += qty
        else:
            assets[entry["unit"]] = assets.get(entry["unit"], 0) + qty
    return Value(lovelace=lovelace, assets=assets)


def parse_utxo(item: dict[str, Any], tx_hash: str | None = None) -> Utxo:
    return Utxo(
        ref=TxOutRef(tx_hash=tx_hash or item["tx_hash"], index=int(item["output_index"])),
        address=item["address"],
        value=parse_amount(item["amount"]),
        datum=item.get("inline_datum"),
        reference_script_hash=item.get("reference_script_hash"),
    )


def parse_maestro_utxo(item: dict[str, Any]) -> Utxo:
    datum = item.get("datum") or {}
    script = item.get("reference_script") or {}
    return Utxo(
        ref=TxOutRef(tx_hash=item["tx_hash"], index=int(item["index"])),
        address=item["address"],
        value=parse_amount(item["assets"], qty_key="amount"),
        datum=datum.get("bytes") if datum.get("type") == "inline" else None,
        reference_script_hash=script.get("hash"),
    )


def _ratio(value: Any) -> float:
    """Maestro prices come as ``"577/10000"``."""
    return float(Fraction(str(value)))


class HttpWallet:
    """Provider plumbing shared by the adapters: authenticated GETs and signing."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        headers: dict[str, str],
        address: str,
        sign_url: str,
        network: str,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self.address = address
        self.sign_url = sign_url
        self.network = network

    async def _get(self, path: str, name: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.get(
                self.base_url + path, headers=self.headers, timeout=REQUEST_TIMEOUT, **kwargs
            )
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, name) from e
        return check_response(resp, name)

    async def _post(self, path: str, name: str, **kwargs) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            resp = await self.client.post(self.base_url + path, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, name) from e
        return check_response(resp, name)

    async def wallet_utxos(self) -> list[Utxo]:
        return await self.utxos_at(self.address)

    async def sign(self, tx: BalancedTransaction) -> SignedTransaction:
        """Have the signing service witness the unsigned CBOR of ``tx``."""
        try:
            resp = await self.client.post(
                self.sign_url,
                json=tx.cbor_hex,
                headers={"Accept": "application/json"},
                timeout=REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "SignTx") from e
        resp = check_response(resp, "SignTx")
        try:
            signed = resp.json()
            bytes.fromhex(signed)
        except (ValueError, TypeError) as e:
            raise RequestError("SignTx", f"signing service did not return CBOR hex: {resp.text[:200]}") from e
        return SignedTransaction(contract_id=tx.skeleton.contract_id, tx_id=tx.tx_id, cbor_hex=signed)


class BlockfrostWallet(HttpWallet):
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        project_id: str,
        address: str,
        sign_url: str,
        network: str = "Preprod",
    ):
        super().__init__(client, base_url, {"project_id": project_id}, address, sign_url, network)

    async def _paged(self, path: str, name: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            try:
                resp = await self._get(path, name, params={"page": page, "count": PAGE_SIZE})
            except RequestError as e:
                # Blockfrost answers 404 for addresses that never held anything.
                if e.is_not_found and page == 1:
                    return []
                raise
            batch = resp.json()
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    async def utxos_at(self, address: str, unit: str | None = None) -> list[Utxo]:
        path = f"/addresses/{address}/utxos" + (f"/{unit}" if unit else "")
        return [parse_utxo(item) for item in await self._paged(path, "GetAddressUtxos")]

    async def utxos_by_ref(self, refs: list[TxOutRef]) -> list[Utxo]:
        """Unspent outputs among ``refs``; spent or unknown ones are omitted."""
        wanted: dict[str, set[int]] = {}
        for ref in refs:
            wanted.setdefault(ref.tx_hash, set()).add(ref.index)

        utxos: list[Utxo] = []
        for tx_hash, indexes in wanted.items():
            try:
                resp = await self._get(f"/txs/{tx_hash}/utxos", "GetTxUtxos")
            except RequestError as e:
                if e.is_not_found:
                    continue
                raise
            for output in resp.json().get("outputs", []):
                if int(output["output_index"]) in indexes and not output.get("consumed_by_tx"):
                    utxos.append(parse_utxo(output, tx_hash))
        return utxos

    async def utxo_by_unit(self, unit: str) -> Utxo:
        """The single UTxO holding ``unit``; anything else is an error."""
        holders = [h for h in (await self._get(f"/assets/{unit}/addresses", "GetAssetAddresses")).json()
                   if int(h["quantity"]) > 0]
        if len(holders) != 1:
            raise RequestError("AssetNotUnique", f"{unit} is held by {len(holders)} addresses")
        utxos = await self.utxos_at(holders[0]["address"], unit)
        if len(utxos) != 1:
            raise RequestError("AssetNotUnique", f"{unit} is held by {len(utxos)} outputs")
        return utxos[0]

    async def protocol_parameters(self) -> ProtocolParameters:
        data = (await self._get("/epochs/latest/parameters", "GetProtocolParameters")).json()
        cost_models = data.get("cost_models_raw") or {}
        return ProtocolParameters(
            min_fee_a=int(data["min_fee_a"]),
            min_fee_b=int(data["min_fee_b"]),
            coins_per_utxo_size=int(data.get("coins_per_utxo_size") or 4310),
            max_tx_size=int(data.get("max_tx_size") or 16384),
            collateral_percent=int(data.get("collateral_percent") or 150),
            price_mem=float(data.get("price_mem") or 0.0577),
            price_step=float(data.get("price_step") or 0.0000721),
            plutus_v2_cost_model=[int(v) for v in cost_models.get("PlutusV2") or []],
            min_fee_ref_script_cost_per_byte=float(data.get("min_fee_ref_script_cost_per_byte") or 0),
        )

    async def submit(self, tx: SignedTransaction) -> str:
        resp = await self._post(
            "/tx/submit",
            "SubmitTx",
            content=bytes.fromhex(tx.cbor_hex),
            headers={"Content-Type": "application/cbor"},
        )
        return resp.json()


class MaestroWallet(HttpWallet):
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        address: str,
        sign_url: str,
        network: str = "Preprod",
    ):
        super().__init__(client, base_url, {"api-key": api_key}, address, sign_url, network)

    async def _cursor_paged(self, path: str, name: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor = None
        while True:
            query = {"count": PAGE_SIZE, **(params or {})}
            if cursor:
                query["cursor"] = cursor
            body = (await self._get(path, name, params=query)).json()
            items.extend(body.get("data") or [])
            cursor = body.get("next_cursor")
            if not cursor:
                return items

    async def utxos_at(self, address: str, unit: str | None = None) -> list[Utxo]:
        params = {"asset": unit} if unit else None
        items = await self._cursor_paged(f"/addresses/{address}/utxos", "GetAddressUtxos", params)
        return [parse_maestro_utxo(item) for item in items]

    async def utxos_by_ref(self, refs: list[TxOutRef]) -> list[Utxo]:
        """Unspent outputs among ``refs``; Maestro omits the spent ones."""
        if not refs:
            return []
        resp = await self._post("/outputs", "GetOutputs", json=[str(r) for r in refs])
        return [parse_maestro_utxo(item) for item in resp.json().get("data") or []]

    async def utxo_by_unit(self, unit: str) -> Utxo:
        """The single UTxO holding ``unit``; anything else is an error."""
        holders = [h for h in await self._cursor_paged(f"/assets/{unit}/addresses", "GetAssetAddresses")
                   if int(h["amount"]) > 0]
        if len(holders) != 1:
            raise RequestError("AssetNotUnique", f"{unit} is held by {len(holders)} addresses")
        utxos = await self.utxos_at(holders[0]["address"], unit)
        if len(utxos) != 1:
            raise RequestError("AssetNotUnique", f"{unit} is held by {len(utxos)} outputs")
        return utxos[0]

    async def protocol_parameters(self) -> ProtocolParameters:
        data = (await self._get("/protocol-params", "GetProtocolParameters")).json()["data"]
        prices = data.get("script_execution_prices") or {}
        cost_models = data.get("plutus_cost_models") or {}
        return ProtocolParameters(
            min_fee_a=int(data["min_fee_coefficient"]),
            min_fee_b=int(data["min_fee_constant"]["ada"]["lovelace"]),
            coins_per_utxo_size=int(data.get("min_utxo_deposit_coefficient") or 4310),
            max_tx_size=int((data.get("max_transaction_size") or {}).get("bytes") or 16384),
            collateral_percent=int(data.get("collateral_percentage") or 150),
            price_mem=_ratio(prices.get("memory") or "577/10000"),
            price_step=_ratio(prices.get("cpu") or "721/10000000"),
            plutus_v2_cost_model=[int(v) for v in cost_models.get("plutus_v2") or []],
        )

    async def submit(self, tx: SignedTransaction) -> str:
        resp = await self._post(
            "/txmanager",
            "SubmitTx",
            content=bytes.fromhex(tx.cbor_hex),
            headers={"Content-Type": "application/cbor", "Accept": "text/plain"},
        )
        return resp.text.strip().strip('"')
