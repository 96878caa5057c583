"""Marlowe Runtime REST client.

Only the three queries the oracle needs: paginated contract headers, the
next applicable inputs of a contract, and contract details.
"""

import logging
from datetime import datetime
from urllib.parse import quote

import httpx

from .types import ApplicableChoice, ContractDetails, ContractHeader, TxOutRef
from .utils import check_response, to_iso, wrap_transport_error

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
PAGE_SIZE = 100


def _contract_path(contract_id: str) -> str:
    return f"/contracts/{quote(contract_id, safe='')}"


class RuntimeClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _get(self, path: str, name: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.get(self.base_url + path, timeout=REQUEST_TIMEOUT, **kwargs)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, name) from e
        return check_response(resp, name)

    async def healthcheck(self) -> bool:
        try:
            resp = await self.client.get(self.base_url + "/healthcheck", timeout=REQUEST_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("Runtime healthcheck failed: %s", e)
            return False
        return resp.is_success

    async def get_contracts_page(
        self,
        party_addresses: list[str],
        tags: list[str],
        range_header: str | None = None,
    ) -> tuple[list[ContractHeader], str | None]:
        """Fetch one page of contract headers and the cursor for the next one."""
        params: list[tuple[str, str]] = [("partyAddress", a) for a in party_addresses]
        params += [("tag", t) for t in tags]
        headers = {"Accept": "application/json"}
        headers["Range"] = range_header or f"contractId;limit {PAGE_SIZE}"

        resp = await self._get("/contracts", "GetContracts", params=params, headers=headers)
        results = resp.json().get("results", [])
        contracts = [
            ContractHeader(
                contract_id=item["resource"]["contractId"],
                role_token_minting_policy_id=item["resource"].get("roleTokenMintingPolicyId", ""),
                tags=item["resource"].get("tags") or {},
            )
            for item in results
        ]
        return contracts, resp.headers.get("Next-Range")

    async def get_all_contracts(self, party_addresses: list[str], tags: list[str]) -> list[ContractHeader]:
        """Follow ``Next-Range`` until the runtime stops returning one."""
        contracts: list[ContractHeader] = []
        cursor: str | None = None
        while True:
            page, cursor = await self.get_contracts_page(party_addresses, tags, cursor)
            contracts.extend(page)
            logger.debug("Fetched %d contract headers (next=%s)", len(page), cursor)
            if not cursor:
                return contracts

    async def get_next_choices(
        self,
        contract_id: str,
        valid_from: datetime,
        valid_until: datetime,
        parties: list[str],
    ) -> list[ApplicableChoice]:
        """Choices applicable to ``contract_id`` within the validity window."""
        params: list[tuple[str, str]] = [
            ("validityStart", to_iso(valid_from)),
            ("validityEnd", to_iso(valid_until)),
        ]
        params += [("party", p) for p in parties]
        resp = await self._get(
            _contract_path(contract_id) + "/next",
            "GetContractNext",
            params=params,
            headers={"Accept": "application/json"},
        )
        applicable = resp.json().get("applicable_inputs") or {}
        return [ApplicableChoice.model_validate(c) for c in applicable.get("choices", [])]

    async def get_contract(self, contract_id: str) -> ContractDetails:
        resp = await self._get(
            _contract_path(contract_id),
            "GetContract",
            headers={"Accept": "application/json"},
        )
        resource = resp.json()["resource"]
        utxo = resource.get("utxo")
        return ContractDetails(
            contract_id=resource["contractId"],
            role_token_minting_policy_id=resource.get("roleTokenMintingPolicyId", ""),
            utxo=TxOutRef.parse(utxo) if utxo else None,
        )
