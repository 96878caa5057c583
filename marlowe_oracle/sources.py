"""Price source registry.

Each answerable choice name maps to exactly one source. Sources form a closed
set; ``feed.resolve_price`` matches on them exhaustively.
"""

from dataclasses import dataclass

from .datum import CHARLI3, ORCFAX


@dataclass(frozen=True)
class RestSource:
    """CoinGecko ``simple/price`` pair.

    CoinGecko quotes ``base_id`` in ``quote_id``; ``inverse`` pairs ask for
    the reciprocal of that quote.
    """
    base_id: str
    quote_id: str
    inverse: bool = False


@dataclass(frozen=True)
class Charli3Source:
    """Charli3 on-chain feed, located by the configured feed token."""


@dataclass(frozen=True)
class OrcfaxSource:
    """Orcfax on-chain feed; ``feed_name`` selects records at the feed address."""
    feed_name: str


PriceSource = RestSource | Charli3Source | OrcfaxSource

SOURCES: dict[str, PriceSource] = {
    "ADAUSD": RestSource("cardano", "usd"),
    "USDADA": RestSource("cardano", "usd", inverse=True),
    "ADAEUR": RestSource("cardano", "eur"),
    "EURADA": RestSource("cardano", "eur", inverse=True),
    "Charli3 ADAUSD": Charli3Source(),
    "Orcfax ADAUSD": OrcfaxSource("CER/ADA-USD/3"),
}


def source_for(choice_name: str) -> PriceSource | None:
    return SOURCES.get(choice_name)


def oracle_kind(source: PriceSource) -> str | None:
    """The decentralized-oracle kind a source reads from, if any."""
    match source:
        case RestSource():
            return None
        case Charli3Source():
            return CHARLI3
        case OrcfaxSource():
            return ORCFAX
