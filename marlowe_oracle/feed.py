"""Price resolution and the feed stage.

``resolve_prices`` turns the distinct choice names of a cycle into prices,
one source call per name. ``get_apply_inputs`` joins each oracle request
with its price, enforcing the choice bounds and the validity of ledger-backed
records.
"""

import asyncio
import logging
import time
from collections.abc import Iterable

import httpx

from .config import OracleMethod, ResolveMethods
from .datum import (
    CHARLI3_SCALE,
    ORCFAX_SCALE,
    decode_charli3_datum,
    decode_orcfax_datum,
)
from .errors import DecodeError, FeedError, MOSError
from .sources import Charli3Source, OrcfaxSource, PriceSource, RestSource, oracle_kind, source_for
from .types import ApplyRequest, ChoiceInput, OracleRequest, ResolvedPrice, within_bounds
from .utils import check_response, from_posix_ms, wrap_transport_error
from .wallet import Wallet

logger = logging.getLogger(__name__)

REST_SCALE = 10**8
FETCH_TIMEOUT = 15.0


# --- REST (CoinGecko) ---


def scale_rest_price(raw: float, inverse: bool = False) -> int:
    """Fixed-point (10^8) price, inverting first for reverse-quoted pairs."""
    if inverse:
        if raw <= 0:
            raise FeedError("InvalidFeedResult", f"cannot invert price {raw}")
        return round(1 / raw * REST_SCALE)
    return round(raw * REST_SCALE)


async def query_coingecko(client: httpx.AsyncClient, base_url: str, source: RestSource) -> float:
    """Raw CoinGecko quote of ``source.base_id`` in ``source.quote_id``."""
    try:
        resp = await client.get(
            f"{base_url}/simple/price",
            params={"ids": source.base_id, "vs_currencies": source.quote_id},
            headers={"Accept": "application/json"},
            timeout=FETCH_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise wrap_transport_error(e, "CoinGeckoQuery") from e
    data = check_response(resp, "CoinGeckoQuery").json()

    if source.base_id not in data:
        raise FeedError("UnknownBaseCurrencyForCGQuery", source.base_id)
    if source.quote_id not in data[source.base_id]:
        raise FeedError("UnknownQuoteCurrencyForCGQuery", source.quote_id)
    return float(data[source.base_id][source.quote_id])


async def fetch_rest_price(client: httpx.AsyncClient, base_url: str, source: RestSource) -> ResolvedPrice:
    raw = await query_coingecko(client, base_url, source)
    return ResolvedPrice(value=scale_rest_price(raw, source.inverse), scale=REST_SCALE)


# --- On-chain feeds ---


async def fetch_charli3_price(wallet: Wallet, oracle: OracleMethod, now_ms: int) -> ResolvedPrice:
    utxo = await wallet.utxo_by_unit(oracle.feed_unit)
    if utxo.datum is None:
        raise FeedError("MissingDatum", f"Charli3 feed output {utxo.ref} has no inline datum")
    record = decode_charli3_datum(bytes.fromhex(utxo.datum), now_ms)
    return ResolvedPrice(
        value=record.price,
        scale=CHARLI3_SCALE,
        source_utxo=utxo,
        valid_from=from_posix_ms(record.valid_from),
        valid_until=from_posix_ms(record.valid_through),
    )


async def fetch_orcfax_price(wallet: Wallet, oracle: OracleMethod, feed_name: str) -> ResolvedPrice:
    """Newest Orcfax record named ``feed_name`` at the feed address."""
    candidates = [
        u for u in await wallet.utxos_at(oracle.feed_address)
        if u.value.has_policy(oracle.feed_policy_id) and u.datum is not None
    ]

    matches = []
    for utxo in candidates:
        try:
            record = decode_orcfax_datum(bytes.fromhex(utxo.datum))
        except (DecodeError, ValueError) as e:
            logger.warning("Skipping unreadable Orcfax output %s: %s", utxo.ref, e)
            continue
        if record.name == feed_name:
            matches.append((record, utxo))

    if not matches:
        raise FeedError("NoMatchingFeed", f"no Orcfax record named {feed_name!r} at {oracle.feed_address}")

    newest = max(record.valid_from for record, _ in matches)
    latest = [(record, utxo) for record, utxo in matches if record.valid_from == newest]
    if len(latest) > 1:
        logger.warning(
            "%d Orcfax records for %s share valid_from=%d (%s); using %s",
            len(latest), feed_name, newest, [str(u.ref) for _, u in latest], latest[0][1].ref,
        )
    record, utxo = latest[0]
    return ResolvedPrice(
        value=record.price,
        scale=ORCFAX_SCALE,
        source_utxo=utxo,
        valid_from=from_posix_ms(record.valid_from),
        valid_until=from_posix_ms(record.valid_through),
    )


# --- Resolution ---


async def resolve_price(
    choice_name: str,
    source: PriceSource,
    methods: ResolveMethods,
    wallet: Wallet,
    client: httpx.AsyncClient,
    coingecko_url: str,
    now_ms: int,
) -> ResolvedPrice:
    oracle = None
    kind = oracle_kind(source)
    if kind is not None:
        oracle = methods.oracle_of_kind(kind)
        if oracle is None:
            raise FeedError("UnknownCurrencyPairOrSource", f"{choice_name}: no {kind} oracle configured")

    match source:
        case RestSource():
            return await fetch_rest_price(client, coingecko_url, source)
        case Charli3Source():
            return await fetch_charli3_price(wallet, oracle, now_ms)
        case OrcfaxSource(feed_name=feed_name):
            return await fetch_orcfax_price(wallet, oracle, feed_name)


async def resolve_prices(
    choice_names: Iterable[str],
    methods: ResolveMethods,
    wallet: Wallet,
    client: httpx.AsyncClient,
    coingecko_url: str,
    now_ms: int | None = None,
) -> dict[str, ResolvedPrice | None]:
    """Resolve each distinct choice name once; failures are recorded as ``None``."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    prices: dict[str, ResolvedPrice | None] = {}

    for name in dict.fromkeys(choice_names):
        source = source_for(name)
        if source is None:
            logger.warning("[%s] UnknownCurrencyPair: no price source registered", name)
            prices[name] = None
            continue
        try:
            prices[name] = await resolve_price(name, source, methods, wallet, client, coingecko_url, now_ms)
            logger.info("[%s] price=%d (scale %d)", name, prices[name].value, prices[name].scale)
        except MOSError as e:
            logger.warning("[%s] %s: %s", name, e.name, e.message)
            prices[name] = None
        except Exception:
            logger.exception("[%s] Price resolution failed", name)
            prices[name] = None
    return prices


# --- Feed stage ---


def build_apply_request(
    request: OracleRequest,
    price: ResolvedPrice | None,
    change_address: str,
) -> ApplyRequest:
    name = request.choice_id.choice_name
    if price is None:
        raise FeedError("MissingPrice", f"no price for {name} in {request.contract_id}")
    if not within_bounds(price.value, request.bounds):
        raise FeedError(
            "FeedResultIsOutOfBounds",
            f"{name}={price.value} outside {[(b.from_, b.to) for b in request.bounds]} in {request.contract_id}",
        )

    valid_from, valid_until = request.valid_from, request.valid_until
    if price.valid_from is not None:
        valid_from = max(valid_from, price.valid_from)
    if price.valid_until is not None:
        valid_until = min(valid_until, price.valid_until)
    if valid_from >= valid_until:
        raise FeedError("StalePrice", f"{name} record validity does not overlap the request window")

    references = [u for u in (request.bridge_utxo, price.source_utxo) if u is not None]
    return ApplyRequest(
        contract_id=request.contract_id,
        change_address=change_address,
        inputs=[ChoiceInput(choice_id=request.choice_id, chosen_num=price.value)],
        valid_from=valid_from,
        valid_until=valid_until,
        reference_utxos=references,
    )


async def _feed(request: OracleRequest, price: ResolvedPrice | None, change_address: str) -> ApplyRequest:
    return build_apply_request(request, price, change_address)


async def get_apply_inputs(
    requests: list[OracleRequest],
    prices: dict[str, ResolvedPrice | None],
    change_address: str,
) -> list[ApplyRequest]:
    """Join requests with prices; each request settles independently."""
    results = await asyncio.gather(
        *(_feed(r, prices.get(r.choice_id.choice_name), change_address) for r in requests),
        return_exceptions=True,
    )

    apply_requests: list[ApplyRequest] = []
    for request, result in zip(requests, results):
        if isinstance(result, FeedError) and result.name == "FeedResultIsOutOfBounds":
            logger.info("[%s] %s", result.name, result.message)
        elif isinstance(result, MOSError):
            logger.warning("[%s] %s: %s", request.contract_id, result.name, result.message)
        elif isinstance(result, BaseException):
            logger.error("[%s] Feed stage failed: %r", request.contract_id, result)
        else:
            apply_requests.append(result)
    return apply_requests
