"""Client for the external apply-computation service.

Given a contract's current datum and inputs, the service returns the next
datum, the redeemer that justifies the transition, and any payments the
transition releases.
"""

import logging
from datetime import datetime

import httpx
from pydantic import ValidationError

from .errors import BuildTransactionError
from .types import ApplyResult, ChoiceInput
from .utils import check_response, to_posix_ms, wrap_transport_error

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60.0


class ApplyService:
    def __init__(self, client: httpx.AsyncClient, url: str):
        self.client = client
        self.url = url

    async def apply(
        self,
        current_datum: str,
        inputs: list[ChoiceInput],
        valid_from: datetime,
        valid_until: datetime,
    ) -> ApplyResult:
        payload = {
            "currentDatum": current_datum,
            "inputs": [i.to_json() for i in inputs],
            "validityStart": to_posix_ms(valid_from),
            "validityEnd": to_posix_ms(valid_until),
        }
        try:
            resp = await self.client.post(self.url, json=payload, timeout=REQUEST_TIMEOUT)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "ApplyInputs") from e
        resp = check_response(resp, "ApplyInputs")

        try:
            data = resp.json()
        except ValueError as e:
            raise BuildTransactionError("ApplyFailed", f"response is not JSON ({e})") from e
        if isinstance(data, dict) and "error" in data:
            raise BuildTransactionError("ApplyFailed", str(data["error"]))
        try:
            return ApplyResult.model_validate(data)
        except ValidationError as e:
            raise BuildTransactionError("ApplyFailed", f"unexpected response: {e}") from e
