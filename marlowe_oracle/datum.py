"""Plutus-data decoding for decentralized price feed datums.

Datums are CBOR-encoded Plutus data: constructors are CBOR tags (121-127 for
constructors 0-6, 1280-1400 for 7-127, and tag 102 ``[index, fields]`` for
anything else), maps are CBOR maps, lists are CBOR arrays, and leaves are
integers or bytestrings. Two feed layouts are understood:

Charli3::

    Constr 0 [Constr 2 [Map {0: price, 1: valid_from, 2: valid_through}]]

Orcfax::

    Constr 0 [Map {"name": bytes,
                   "value": [Constr 3 [significand, exponent]],
                   "valueReference": [Map {"value": valid_from},
                                      Map {"value": valid_through}], ...}]

Every mismatch raises ``DecodeError`` naming the shape and the field.
"""

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import cbor2

from .errors import DecodeError, ExpiredPriceError

CHARLI3 = "charli3"
ORCFAX = "orcfax"

# Aligns Orcfax exponents with the service's 10^6 fixed-point scale.
ORCFAX_FIXED_POINT_SHIFT = 6
ORCFAX_SCALE = 10**ORCFAX_FIXED_POINT_SHIFT
CHARLI3_SCALE = 10**6

_WORD = 2**64


@dataclass(frozen=True)
class Constr:
    """A decoded Plutus constructor application."""
    index: int
    fields: list[Any]


@dataclass(frozen=True)
class Charli3Price:
    price: int
    valid_from: int  # POSIX milliseconds
    valid_through: int


@dataclass(frozen=True)
class OrcfaxPrice:
    name: str
    price: int
    valid_from: int  # POSIX milliseconds
    valid_through: int


# --- Generic Plutus data ---


def _is_array(obj: Any) -> bool:
    # cbor2 hands back lists or tuples depending on version and nesting.
    return isinstance(obj, Sequence) and not isinstance(obj, (bytes, bytearray, str))


def _from_cbor(obj: Any) -> Any:
    if isinstance(obj, cbor2.CBORTag):
        if 121 <= obj.tag <= 127:
            return Constr(obj.tag - 121, [_from_cbor(f) for f in obj.value])
        if 1280 <= obj.tag <= 1400:
            return Constr(obj.tag - 1280 + 7, [_from_cbor(f) for f in obj.value])
        if obj.tag == 102 and _is_array(obj.value) and len(obj.value) == 2:
            index, fields = obj.value
            return Constr(index, [_from_cbor(f) for f in fields])
        raise ValueError(f"unsupported CBOR tag {obj.tag}")
    if _is_array(obj):
        return [_from_cbor(item) for item in obj]
    if isinstance(obj, Mapping):
        # Keys stay as decoded (ints and bytes); constructor keys are not used by feeds.
        return {key: _from_cbor(value) for key, value in obj.items()}
    if isinstance(obj, (int, bytes)) and not isinstance(obj, bool):
        return obj
    raise ValueError(f"unsupported Plutus data item {type(obj).__name__}")


def decode_plutus(datum: bytes, shape: str = "plutus") -> Any:
    """Decode CBOR bytes into ``Constr``/dict/list/int/bytes."""
    try:
        return _from_cbor(cbor2.loads(datum))
    except Exception as e:
        raise DecodeError(shape, f"malformed cbor ({e})") from e


def _to_cbor(obj: Any) -> Any:
    if isinstance(obj, Constr):
        fields = [_to_cbor(f) for f in obj.fields]
        if 0 <= obj.index <= 6:
            return cbor2.CBORTag(121 + obj.index, fields)
        if 7 <= obj.index <= 127:
            return cbor2.CBORTag(1280 + obj.index - 7, fields)
        return cbor2.CBORTag(102, [obj.index, fields])
    if isinstance(obj, list):
        return [_to_cbor(item) for item in obj]
    if isinstance(obj, dict):
        return {key: _to_cbor(value) for key, value in obj.items()}
    return obj


def encode_plutus(obj: Any) -> bytes:
    """Encode ``Constr``/dict/list/int/bytes as CBOR Plutus data."""
    return cbor2.dumps(_to_cbor(obj))


# --- Fixed-point helpers ---


def to_signed(word: int) -> int:
    """Reinterpret an unsigned 64-bit bit pattern as a signed integer."""
    if word >= _WORD // 2 and word < _WORD:
        return word - _WORD
    return word


def scale_decimal(significand: int, exponent: int, shift: int = ORCFAX_FIXED_POINT_SHIFT) -> int:
    """floor(significand * 10^(exponent + shift)) in exact integer arithmetic."""
    power = exponent + shift
    if power >= 0:
        return significand * 10**power
    return significand // 10**(-power)


# --- Shape matching ---


def _constr(obj: Any, index: int, arity: int, shape: str, what: str) -> list[Any]:
    if not isinstance(obj, Constr) or obj.index != index:
        raise DecodeError(shape, f"malformed {what} constructor")
    if len(obj.fields) < arity:
        raise DecodeError(shape, f"malformed {what} constructor arity")
    return obj.fields


def _int(obj: Any, shape: str, what: str) -> int:
    if not isinstance(obj, int) or isinstance(obj, bool):
        raise DecodeError(shape, f"{what} is not an integer")
    return obj


def _lookup(mapping: Any, key: Any, shape: str, what: str) -> Any:
    if not isinstance(mapping, dict):
        raise DecodeError(shape, f"{what} is not a map")
    if key not in mapping:
        label = key.decode("utf-8", "replace") if isinstance(key, bytes) else key
        raise DecodeError(shape, f"missing {label} key")
    return mapping[key]


def decode_charli3_datum(datum: bytes, now_ms: int | None = None) -> Charli3Price:
    """Decode a Charli3 feed datum; raises ``ExpiredPriceError`` past ``valid_through``."""
    data = decode_plutus(datum, CHARLI3)
    outer = _constr(data, 0, 1, CHARLI3, "outer")
    inner = _constr(outer[0], 2, 1, CHARLI3, "price data")
    fields = inner[0]
    price = _int(_lookup(fields, 0, CHARLI3, "price map"), CHARLI3, "price")
    valid_from = _int(_lookup(fields, 1, CHARLI3, "price map"), CHARLI3, "valid_from")
    valid_through = _int(_lookup(fields, 2, CHARLI3, "price map"), CHARLI3, "valid_through")

    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if valid_through < now_ms:
        raise ExpiredPriceError(CHARLI3, valid_through, now_ms)
    return Charli3Price(price=price, valid_from=valid_from, valid_through=valid_through)


def decode_orcfax_datum(datum: bytes) -> OrcfaxPrice:
    """Decode an Orcfax feed datum. Name matching is left to the caller."""
    data = decode_plutus(datum, ORCFAX)
    outer = _constr(data, 0, 1, ORCFAX, "outer")
    body = outer[0]

    name = _lookup(body, b"name", ORCFAX, "statement")
    if not isinstance(name, bytes):
        raise DecodeError(ORCFAX, "name is not a bytestring")

    value = _lookup(body, b"value", ORCFAX, "statement")
    if not isinstance(value, list) or len(value) != 1:
        raise DecodeError(ORCFAX, "value is not a one-element list")
    significand, exponent = _constr(value[0], 3, 2, ORCFAX, "rational")[:2]
    significand = _int(significand, ORCFAX, "significand")
    exponent = to_signed(_int(exponent, ORCFAX, "exponent"))

    reference = _lookup(body, b"valueReference", ORCFAX, "statement")
    if not isinstance(reference, list) or len(reference) != 2:
        raise DecodeError(ORCFAX, "valueReference is not a pair")
    valid_from = _int(_lookup(reference[0], b"value", ORCFAX, "valueReference"), ORCFAX, "valid_from")
    valid_through = _int(_lookup(reference[1], b"value", ORCFAX, "valueReference"), ORCFAX, "valid_through")

    return OrcfaxPrice(
        name=name.decode("utf-8", "replace"),
        price=scale_decimal(significand, exponent),
        valid_from=valid_from,
        valid_through=valid_through,
    )
