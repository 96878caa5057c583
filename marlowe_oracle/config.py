"""Environment and config-file loading for the Marlowe Oracle Service.

Environment (``.env`` is loaded by ``main``):
    MARLOWE_RUNTIME_URL, SIGN_TX_URL, APPLY_URL, NETWORK, MOS_ADDRESS,
    BLOCKFROST_APIKEY xor MAESTRO_APITOKEN,
    COINGECKO_API_URL (optional)

Config file (JSON), e.g.::

    {
      "delay": 60000,
      "resolve_methods": {
        "address": {"choice_names": ["ADAUSD"]},
        "oracles": [{"kind": "charli3", "role_name": "Charli3 Oracle", ...}]
      },
      "tags": ["mos"]
    }

The original ``{"resolveMethod": "Address", "choiceNames": [...]}`` form is
still accepted.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .types import TxOutRef

logger = logging.getLogger(__name__)

BLOCKFROST_URLS = {
    "Mainnet": "https://cardano-mainnet.blockfrost.io/api/v0",
    "Preprod": "https://cardano-preprod.blockfrost.io/api/v0",
    "Preview": "https://cardano-preview.blockfrost.io/api/v0",
}

MAESTRO_URLS = {
    "Mainnet": "https://mainnet.gomaestro-api.org/v1",
    "Preprod": "https://preprod.gomaestro-api.org/v1",
    "Preview": "https://preview.gomaestro-api.org/v1",
}

DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"


class AddressMethod(BaseModel):
    """Answer choices owned by the service address, limited to ``choice_names``."""
    choice_names: list[str]


class OracleMethod(BaseModel):
    """Answer choices owned by ``role_name`` through a bridge validator."""
    kind: Literal["charli3", "orcfax"]
    role_name: str
    bridge_address: str
    bridge_reference: TxOutRef
    feed_address: str
    feed_policy_id: str
    feed_token_name: str = ""  # hex

    @field_validator("bridge_reference", mode="before")
    @classmethod
    def _parse_ref(cls, v: Any) -> Any:
        return TxOutRef.parse(v) if isinstance(v, str) else v

    @property
    def feed_unit(self) -> str:
        return self.feed_policy_id + self.feed_token_name

    @property
    def role_name_hex(self) -> str:
        return self.role_name.encode().hex()


class ResolveMethods(BaseModel):
    address: AddressMethod | None = None
    oracles: list[OracleMethod] = []

    @model_validator(mode="after")
    def _check(self) -> "ResolveMethods":
        if self.address is None and not self.oracles:
            raise ValueError("at least one resolve method must be configured")
        roles = [o.role_name for o in self.oracles]
        if len(roles) != len(set(roles)):
            raise ValueError("oracle role names must be unique")
        kinds = [o.kind for o in self.oracles]
        if len(kinds) != len(set(kinds)):
            raise ValueError("at most one oracle per feed kind")
        return self

    def oracle_for_role(self, role_name: str) -> OracleMethod | None:
        for oracle in self.oracles:
            if oracle.role_name == role_name:
                return oracle
        return None

    def oracle_of_kind(self, kind: str) -> OracleMethod | None:
        for oracle in self.oracles:
            if oracle.kind == kind:
                return oracle
        return None


class BalanceSettings(BaseModel):
    """Amounts used by the balancer; execution units are the budget of the Marlowe spend."""
    ex_units_mem: int = Field(default=12_000_000, gt=0)
    ex_units_steps: int = Field(default=6_000_000_000, gt=0)
    reference_script_size: int = Field(default=0, ge=0)  # bytes, when spending via a reference script
    min_change: int = Field(default=1_000_000, ge=0)
    collateral_amount: int = Field(default=5_000_000, gt=0)


class MOSConfig(BaseModel):
    delay: int = Field(gt=0)  # milliseconds between cycles
    resolve_methods: ResolveMethods
    tags: list[str] = []
    marlowe_reference_utxo: TxOutRef | None = None
    balance: BalanceSettings = BalanceSettings()

    @field_validator("marlowe_reference_utxo", mode="before")
    @classmethod
    def _parse_ref(cls, v: Any) -> Any:
        return TxOutRef.parse(v) if isinstance(v, str) else v

    @model_validator(mode="before")
    @classmethod
    def _legacy_form(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "resolveMethod" not in data:
            return data
        data = dict(data)
        method = data.pop("resolveMethod")
        choice_names = data.pop("choiceNames", [])
        if method not in ("All", "Address", "Role"):
            raise ValueError(f"unknown resolveMethod {method!r}")
        methods = dict(data.get("resolve_methods") or {})
        if method in ("All", "Address"):
            methods.setdefault("address", {"choice_names": choice_names})
        if method == "Address":
            methods.pop("oracles", None)
        data["resolve_methods"] = methods
        return data

    @property
    def delay_seconds(self) -> float:
        return self.delay / 1000


class MOSEnv(BaseModel):
    marlowe_runtime_url: str
    sign_tx_url: str
    apply_url: str
    network: str
    provider: Literal["blockfrost", "maestro"]
    provider_url: str
    provider_api_key: str
    address: str
    coingecko_url: str = DEFAULT_COINGECKO_URL

    def secrets(self) -> list[str]:
        return [self.provider_api_key, self.sign_tx_url]


def _env_value(environ: Mapping[str, str], key: str) -> str:
    value = environ.get(key)
    if not value:
        raise ConfigurationError("MissingEnvironmentVariable", f"Missing environment variable: {key}")
    return value


def parse_mos_env(environ: Mapping[str, str] | None = None) -> MOSEnv:
    """Read and validate the service environment."""
    environ = os.environ if environ is None else environ

    network = _env_value(environ, "NETWORK")
    if network not in BLOCKFROST_URLS:
        raise ConfigurationError("UnknownNetwork", f"Unknown network: {network}")

    blockfrost_key = environ.get("BLOCKFROST_APIKEY")
    maestro_token = environ.get("MAESTRO_APITOKEN")
    if blockfrost_key and maestro_token:
        raise ConfigurationError("MoreThanOneProviderVariable", "More than one provider environment variable")
    if blockfrost_key:
        provider, provider_url, api_key = "blockfrost", BLOCKFROST_URLS[network], blockfrost_key
    elif maestro_token:
        provider, provider_url, api_key = "maestro", MAESTRO_URLS[network], maestro_token
    else:
        raise ConfigurationError(
            "MissingProviderEnvironmentVariable",
            "Missing provider environment variable: MAESTRO_APITOKEN or BLOCKFROST_APIKEY",
        )

    return MOSEnv(
        marlowe_runtime_url=_env_value(environ, "MARLOWE_RUNTIME_URL").rstrip("/"),
        sign_tx_url=_env_value(environ, "SIGN_TX_URL"),
        apply_url=_env_value(environ, "APPLY_URL"),
        network=network,
        provider=provider,
        provider_url=provider_url,
        provider_api_key=api_key,
        address=_env_value(environ, "MOS_ADDRESS"),
        coingecko_url=environ.get("COINGECKO_API_URL", DEFAULT_COINGECKO_URL).rstrip("/"),
    )


def load_config(path: str | Path) -> MOSConfig:
    """Read and validate the JSON config file."""
    try:
        raw = Path(path).read_text()
        config = MOSConfig.model_validate_json(raw)
    except (OSError, ValidationError) as e:
        raise ConfigurationError("ErrorFetchingOrParsingJSON", f"{path}: {e}") from e

    logger.info(
        "Loaded config: delay=%dms address_method=%s oracles=%s",
        config.delay,
        config.resolve_methods.address is not None,
        [o.kind for o in config.resolve_methods.oracles],
    )
    return config
