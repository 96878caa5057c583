"""Shared types and data models for the Marlowe Oracle Service."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# --- Marlowe language ---


class Party(BaseModel):
    """A choice owner: either a bech32 address or a role token name."""
    model_config = ConfigDict(frozen=True)

    address: str | None = None
    role_token: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Party":
        if (self.address is None) == (self.role_token is None):
            raise ValueError("Party must be exactly one of address or role_token")
        return self

    def to_json(self) -> dict[str, str]:
        if self.address is not None:
            return {"address": self.address}
        return {"role_token": self.role_token}


class ChoiceId(BaseModel):
    model_config = ConfigDict(frozen=True)

    choice_name: str
    choice_owner: Party

    def to_json(self) -> dict[str, Any]:
        return {"choice_name": self.choice_name, "choice_owner": self.choice_owner.to_json()}


class Bound(BaseModel):
    """Inclusive integer interval [from, to]."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: int = Field(alias="from")
    to: int

    def contains(self, value: int) -> bool:
        return self.from_ <= value <= self.to


def within_bounds(value: int, bounds: list[Bound]) -> bool:
    """True iff ``value`` falls inside at least one of ``bounds``."""
    return any(b.contains(value) for b in bounds)


class ChoiceInput(BaseModel):
    """A concrete value for a choice, in Marlowe's input JSON shape."""
    model_config = ConfigDict(frozen=True)

    choice_id: ChoiceId
    chosen_num: int

    def to_json(self) -> dict[str, Any]:
        return {"for_choice_id": self.choice_id.to_json(), "input_that_chooses_num": self.chosen_num}


# --- Ledger ---


class TxOutRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    index: int

    @classmethod
    def parse(cls, ref: str) -> "TxOutRef":
        """Parse ``<tx_hash>#<index>``."""
        tx_hash, sep, index = ref.partition("#")
        if not sep or not tx_hash or not index.isdigit():
            raise ValueError(f"Invalid output reference: {ref!r}")
        return cls(tx_hash=tx_hash, index=int(index))

    def __str__(self) -> str:
        return f"{self.tx_hash}#{self.index}"


class Value(BaseModel):
    """Lovelace plus native assets keyed by unit (policy id + hex asset name)."""
    model_config = ConfigDict(frozen=True)

    lovelace: int = 0
    assets: dict[str, int] = {}

    def quantity(self, unit: str) -> int:
        if unit == "lovelace":
            return self.lovelace
        return self.assets.get(unit, 0)

    def has_policy(self, policy_id: str) -> bool:
        return any(unit.startswith(policy_id) and qty > 0 for unit, qty in self.assets.items())

    @property
    def is_ada_only(self) -> bool:
        return not any(self.assets.values())

    def __add__(self, other: "Value") -> "Value":
        assets = dict(self.assets)
        for unit, qty in other.assets.items():
            assets[unit] = assets.get(unit, 0) + qty
        return Value(lovelace=self.lovelace + other.lovelace, assets={u: q for u, q in assets.items() if q})


class Utxo(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: TxOutRef
    address: str
    value: Value
    datum: str | None = None  # inline datum, CBOR hex
    reference_script_hash: str | None = None


class TxOutput(BaseModel):
    address: str
    value: Value
    datum: str | None = None


class ProtocolParameters(BaseModel):
    min_fee_a: int
    min_fee_b: int
    coins_per_utxo_size: int = 4310
    max_tx_size: int = 16384
    collateral_percent: int = 150
    price_mem: float = 0.0577
    price_step: float = 0.0000721
    plutus_v2_cost_model: list[int] = []
    min_fee_ref_script_cost_per_byte: float = 0


# --- Marlowe Runtime views ---


class ContractHeader(BaseModel):
    contract_id: str
    role_token_minting_policy_id: str = ""
    tags: dict[str, Any] = {}


class ContractDetails(BaseModel):
    contract_id: str
    role_token_minting_policy_id: str = ""
    utxo: TxOutRef | None = None


class ApplicableChoice(BaseModel):
    for_choice: ChoiceId
    can_choose_between: list[Bound]


# --- Pipeline ---


class OracleRequest(BaseModel):
    """One answerable choice found by the scanner. Lives for one cycle."""
    model_config = ConfigDict(frozen=True)

    contract_id: str
    choice_id: ChoiceId
    bounds: list[Bound]
    valid_from: datetime
    valid_until: datetime
    role_token_minting_policy_id: str = ""
    bridge_utxo: Utxo | None = None


class ResolvedPrice(BaseModel):
    """A price for one choice name.

    ``value`` is fixed-point with ``scale`` units per 1.0. Ledger-backed
    prices carry the feed UTxO and the validity of the record.
    """
    model_config = ConfigDict(frozen=True)

    value: int
    scale: int
    source_utxo: Utxo | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None


class ApplyRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    contract_id: str
    change_address: str
    inputs: list[ChoiceInput]
    valid_from: datetime
    valid_until: datetime
    reference_utxos: list[Utxo] = []


class ApplyResult(BaseModel):
    """Successful answer of the apply-computation service."""
    model_config = ConfigDict(populate_by_name=True)

    new_datum: str = Field(alias="newDatum", min_length=2)  # CBOR hex
    redeemer: str = Field(min_length=2)
    payments: list[dict[str, Any]] = []

    @field_validator("payments", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class TransactionSkeleton(BaseModel):
    """Unsigned, unbalanced transaction advancing one contract."""
    contract_id: str
    script_input: Utxo
    redeemer: str
    outputs: list[TxOutput]
    valid_from: datetime
    valid_until: datetime
    required_signers: list[str] = []
    reference_inputs: list[TxOutRef] = []


class BalancedTransaction(BaseModel):
    skeleton: TransactionSkeleton
    funding_inputs: list[Utxo]
    collateral: list[Utxo]
    change: TxOutput
    fee: int
    tx_id: str
    cbor_hex: str  # unsigned

    @property
    def consumed(self) -> list[TxOutRef]:
        """Every output this transaction spends when it lands."""
        return [self.skeleton.script_input.ref] + [u.ref for u in self.funding_inputs]


class SignedTransaction(BaseModel):
    contract_id: str
    tx_id: str
    cbor_hex: str
