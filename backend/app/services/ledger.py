"""Ledger RPC client for lifecycle writes signed by the backend authority."""

from __future__ import annotations

import asyncio
import itertools
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx
from loguru import logger

from app.core.config import LEDGER_COMMITMENTS, Settings, get_settings
from app.errors import InvalidLedgerAddressError, LedgerSubmissionError

APPROVE_MARKET = "approve_market"
FINALIZE_MARKET = "finalize_market"
DRY_RUN_SIGNATURE = "dry-run-signature"

_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def validate_ledger_address(address: str) -> str:
    if not isinstance(address, str) or not _BASE58_ADDRESS.match(address):
        raise InvalidLedgerAddressError(f"Invalid on-chain address: {address!r}")
    return address


@dataclass(slots=True, frozen=True)
class AccountMeta:
    name: str
    address: str
    is_signer: bool = False
    is_writable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pubkey": self.address,
            "isSigner": self.is_signer,
            "isWritable": self.is_writable,
        }


class LedgerClient(Protocol):
    async def submit_and_confirm(
        self, method: str, accounts: Sequence[AccountMeta], args: dict[str, Any]
    ) -> str:
        """Submit one program instruction and return its confirmed signature."""

    async def get_global_config_authority(self) -> str:
        """Backend authority recorded in the program's global config account."""


def market_accounts(market_address: str, settings: Settings | None = None) -> list[AccountMeta]:
    """Ordered accounts for authority-signed lifecycle instructions."""

    settings = settings or get_settings()
    return [
        AccountMeta("global_config", settings.ledger_global_config_address),
        AccountMeta("market", validate_ledger_address(market_address), is_writable=True),
        AccountMeta("backend_authority", settings.ledger_authority_address, is_signer=True),
    ]


class HttpLedgerClient:
    """JSON-RPC client for the signing relay that fronts the ledger program."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        rpc_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.rpc_url = rpc_url or self.settings.ledger_rpc_url
        self.program_id = self.settings.ledger_program_id
        self.commitment = self.settings.ledger_commitment
        self._client = httpx.AsyncClient(
            base_url=self.rpc_url,
            timeout=self.settings.ledger_request_timeout_seconds,
            transport=transport,
        )
        self._ids = itertools.count(1)
        self._sleep = sleep

    async def __aenter__(self) -> "HttpLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post("", json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerSubmissionError(f"{method} request failed: {exc}") from exc

        payload = response.json()
        if not isinstance(payload, dict):
            raise LedgerSubmissionError(f"{method} returned a non-object response")
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LedgerSubmissionError(f"{method} rejected: {message}")
        return payload.get("result")

    async def submit_and_confirm(
        self, method: str, accounts: Sequence[AccountMeta], args: dict[str, Any]
    ) -> str:
        result = await self._rpc(
            "sendInstruction",
            [
                {
                    "programId": self.program_id,
                    "instruction": method,
                    "accounts": [account.to_dict() for account in accounts],
                    "args": args,
                },
                {"commitment": self.commitment},
            ],
        )
        signature = result.get("signature") if isinstance(result, dict) else result
        if not isinstance(signature, str) or not signature:
            raise LedgerSubmissionError(f"{method} returned no transaction signature")

        logger.info("Submitted {} as {}; awaiting {} confirmation", method, signature, self.commitment)
        await self._await_confirmation(signature)
        return signature

    async def _await_confirmation(self, signature: str) -> None:
        wanted = LEDGER_COMMITMENTS.index(self.commitment)
        deadline = time.monotonic() + self.settings.ledger_confirmation_timeout_seconds
        while True:
            result = await self._rpc(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": True}],
            )
            if result is None:
                result = {}
            if not isinstance(result, dict):
                raise LedgerSubmissionError(
                    f"getSignatureStatuses returned a non-object result for {signature}"
                )
            statuses = result.get("value") or [None]
            status = statuses[0]
            if status:
                if status.get("err"):
                    raise LedgerSubmissionError(
                        f"Transaction {signature} failed on ledger: {status['err']}"
                    )
                reached = status.get("confirmationStatus")
                if reached in LEDGER_COMMITMENTS and LEDGER_COMMITMENTS.index(reached) >= wanted:
                    return
            if time.monotonic() >= deadline:
                raise LedgerSubmissionError(
                    f"Transaction {signature} not {self.commitment} within "
                    f"{self.settings.ledger_confirmation_timeout_seconds:.0f}s"
                )
            await self._sleep(self.settings.ledger_confirmation_poll_seconds)

    async def get_global_config_authority(self) -> str:
        address = self.settings.ledger_global_config_address
        result = await self._rpc("getAccountInfo", [address, {"encoding": "jsonParsed"}])
        account = result.get("value") if isinstance(result, dict) else None
        if not account:
            raise LedgerSubmissionError(f"Global config account not found at {address}")
        data = account.get("data") if isinstance(account, dict) else None
        authority = data.get("backend_authority") if isinstance(data, dict) else None
        if not isinstance(authority, str) or not authority:
            raise LedgerSubmissionError(f"Global config at {address} has no backend authority")
        return authority


def approve_market_args(likes: int, dislikes: int) -> dict[str, Any]:
    return {"likes": int(likes), "dislikes": int(dislikes)}


def finalize_market_args(
    final_outcome: str, agree: int | None, disagree: int | None
) -> dict[str, Any]:
    return {"final_outcome": final_outcome, "dispute_agree": agree, "dispute_disagree": disagree}
