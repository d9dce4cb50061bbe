"""
Trade Executor / Fee Claim adapters

The engine never signs or submits transactions itself. It hands a
TradeRequest to a TradeExecutor and gets a TradeOutcome back; any wallet
custody lives behind that boundary.

Implementations:
- HttpTradeExecutor: remote swap/claim service over aiohttp
- DryRunTradeExecutor: every trade fills instantly (FLYWHEEL_DRY_RUN)

Trades are never retried here: a failed or timed-out trade is reported
as an outcome and the cycle retries on its next due tick. Read-only
balance lookups are retried with tenacity.
"""

import asyncio
import logging  # Needed for tenacity before_sleep_log level constants
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import TRADE_EXECUTOR_URL, TRADE_EXECUTOR_API_KEY
from flywheel.core.enums import CyclePhase, TradeReason
from flywheel.core.exceptions import TradeExecutionError


@dataclass(frozen=True)
class TradeRequest:
    """One trade the engine wants executed."""

    token_id: int
    mint_address: str
    phase: CyclePhase
    wallet_address: str
    wallet_key_encrypted: str
    encryption_iv: str
    encryption_auth_tag: str
    amount_percent: float
    slippage_bps: int
    timeout_seconds: int

    @classmethod
    def for_token(cls, token, settings, phase: CyclePhase) -> "TradeRequest":
        """Build a request from a UserToken and its CycleSettings."""
        return cls(
            token_id=token.id,
            mint_address=token.token_mint_address,
            phase=phase,
            wallet_address=token.ops_wallet_address,
            wallet_key_encrypted=token.ops_wallet_key_encrypted,
            encryption_iv=token.ops_encryption_iv,
            encryption_auth_tag=token.ops_encryption_auth_tag,
            amount_percent=settings.percent_for(phase),
            slippage_bps=settings.slippage_bps,
            timeout_seconds=settings.confirmation_timeout_seconds,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "mint": self.mint_address,
            "side": self.phase.value,
            "wallet": {
                "address": self.wallet_address,
                "key_encrypted": self.wallet_key_encrypted,
                "iv": self.encryption_iv,
                "auth_tag": self.encryption_auth_tag,
            },
            "amount_percent": self.amount_percent,
            "slippage_bps": self.slippage_bps,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass(frozen=True)
class TradeOutcome:
    """Result of one executor call."""

    success: bool
    reason: TradeReason
    amount: Optional[float] = None
    signature: Optional[str] = None
    error: Optional[str] = None
    latency_ms: Optional[int] = None

    @classmethod
    def filled(cls, amount: Optional[float] = None, signature: Optional[str] = None) -> "TradeOutcome":
        return cls(success=True, reason=TradeReason.FILLED, amount=amount, signature=signature)

    @classmethod
    def failed(cls, reason: TradeReason, error: Optional[str] = None) -> "TradeOutcome":
        return cls(success=False, reason=reason, error=error)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TradeOutcome":
        """Parse the executor service JSON body."""
        success = bool(data.get("success"))
        try:
            reason = TradeReason(data.get("reason") or ("filled" if success else "chain_error"))
        except ValueError:
            reason = TradeReason.CHAIN_ERROR

        return cls(
            success=success and reason is TradeReason.FILLED,
            reason=reason,
            amount=data.get("amount"),
            signature=data.get("signature"),
            error=data.get("error"),
        )


class TradeExecutor(ABC):
    """Executes one buy or sell."""

    @abstractmethod
    async def execute_trade(self, request: TradeRequest) -> TradeOutcome:
        ...

    async def close(self) -> None:
        pass


class FeeClaimService(ABC):
    """Reads and claims creator fees for a token."""

    @abstractmethod
    async def get_claimable_balance(self, token) -> float:
        ...

    @abstractmethod
    async def claim_fees(self, token) -> bool:
        ...

    async def close(self) -> None:
        pass


async def execute_with_timeout(executor: TradeExecutor, request: TradeRequest) -> TradeOutcome:
    """
    Run one executor call bounded by the confirmation timeout

    Never raises (except cancellation): timeouts and unexpected errors
    come back as failed outcomes.
    """
    started = time.monotonic()
    try:
        outcome = await asyncio.wait_for(
            executor.execute_trade(request), timeout=request.timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.warning(
            f"Trade timeout for token {request.token_id} ({request.phase.value}) "
            f"after {request.timeout_seconds}s"
        )
        outcome = TradeOutcome.failed(
            TradeReason.TIMEOUT, f"no confirmation within {request.timeout_seconds}s"
        )
    except TradeExecutionError as e:
        logger.error(f"Trade executor error for token {request.token_id}: {e}")
        outcome = TradeOutcome.failed(TradeReason.CHAIN_ERROR, str(e))
    except Exception as e:
        logger.exception(f"Trade executor error for token {request.token_id}: {e}")
        outcome = TradeOutcome.failed(TradeReason.CHAIN_ERROR, str(e))

    latency_ms = int((time.monotonic() - started) * 1000)
    return TradeOutcome(
        success=outcome.success,
        reason=outcome.reason,
        amount=outcome.amount,
        signature=outcome.signature,
        error=outcome.error,
        latency_ms=latency_ms,
    )


class HttpTradeExecutor(TradeExecutor, FeeClaimService):
    """
    Client for the swap/claim service

    Endpoints:
        POST /trades                         -> {"success", "reason", "amount", "signature", "error"}
        GET  /wallets/{ops_address}/claimable -> {"balance": float}
        POST /claims                         -> {"success": bool}
    """

    def __init__(self, base_url: str = TRADE_EXECUTOR_URL, api_key: str = TRADE_EXECUTOR_API_KEY):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def execute_trade(self, request: TradeRequest) -> TradeOutcome:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=request.timeout_seconds)

        try:
            async with session.post(
                f"{self.base_url}/trades", json=request.to_payload(), timeout=timeout
            ) as response:
                if response.status >= 500:
                    text = await response.text()
                    return TradeOutcome.failed(
                        TradeReason.CHAIN_ERROR, f"executor HTTP {response.status}: {text[:200]}"
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise TradeExecutionError(
                        f"executor returned invalid JSON (HTTP {response.status})"
                    ) from e
        except asyncio.TimeoutError:
            return TradeOutcome.failed(TradeReason.TIMEOUT, "executor request timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Trade executor request failed for token {request.token_id}: {e}")
            return TradeOutcome.failed(TradeReason.CHAIN_ERROR, str(e))

        if not isinstance(data, dict):
            raise TradeExecutionError(f"unexpected executor response: {str(data)[:200]}")

        outcome = TradeOutcome.from_response(data)
        logger.debug(
            f"Trade {request.phase.value} token={request.token_id}: "
            f"success={outcome.success} reason={outcome.reason.value}"
        )
        return outcome

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def get_claimable_balance(self, token) -> float:
        session = await self._get_session()
        async with session.get(
            f"{self.base_url}/wallets/{token.ops_wallet_address}/claimable",
            params={"mint": token.token_mint_address},
            timeout=aiohttp.ClientTimeout(total=15),
        ) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
        return float(data.get("balance") or 0.0)

    async def claim_fees(self, token) -> bool:
        session = await self._get_session()
        payload = {
            "token_id": token.id,
            "mint": token.token_mint_address,
            "wallet": {
                "address": token.dev_wallet_address,
                "key_encrypted": token.dev_wallet_key_encrypted,
                "iv": token.dev_encryption_iv,
                "auth_tag": token.dev_encryption_auth_tag,
            },
            "destination": token.ops_wallet_address,
        }
        async with session.post(
            f"{self.base_url}/claims", json=payload, timeout=aiohttp.ClientTimeout(total=60)
        ) as response:
            if response.status != 200:
                logger.error(f"Fee claim failed for token {token.id}: HTTP {response.status}")
                return False
            data = await response.json(content_type=None)
        return bool(data.get("success"))

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class DryRunTradeExecutor(TradeExecutor, FeeClaimService):
    """Fills every trade immediately; nothing is claimable."""

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self.trades = 0

    async def execute_trade(self, request: TradeRequest) -> TradeOutcome:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        self.trades += 1
        logger.info(
            f"[DRY RUN] {request.phase.value} {request.amount_percent}% of token {request.token_id} "
            f"({request.mint_address})"
        )
        return TradeOutcome.filled(signature=f"dry-run-{request.token_id}-{self.trades}")

    async def get_claimable_balance(self, token) -> float:
        return 0.0

    async def claim_fees(self, token) -> bool:
        logger.info(f"[DRY RUN] claim fees for token {token.id}")
        return True


def create_executor(dry_run: bool) -> TradeExecutor:
    """Executor used by the worker process."""
    if dry_run:
        logger.warning("FLYWHEEL_DRY_RUN enabled - trades will not be submitted")
        return DryRunTradeExecutor()
    return HttpTradeExecutor()
