"""
Polymarket CLOB exchange adapter.

Wraps py-clob-client (order signing, books, markets), the Data API
(positions, public trades, portfolio value) and web3 (USDC balance,
allowance, transfers) behind the BaseExchange interface.

All SDK and HTTP calls are synchronous; they run in worker threads via
``asyncio.to_thread`` with a fixed timeout, and go through the adapter's
rate limiters.

Safety Features:
- Timeout on every call
- Read calls retried with exponential backoff (tenacity, 3 attempts)
- Order placement never retried on timeout (result reported as unknown)
- One credential re-derivation per order on auth failure
- One allowance refresh per order on allowance failure

IMPORTANT: Requires credentials to be configured in .env file:
- POLYMARKET_PRIVATE_KEY: Your wallet private key
- POLYMARKET_FUNDER: Your proxy wallet address (holds funds)
"""

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

import requests
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..api.data_api import DataApiClient
from ..config import API_TIMEOUT, CHAIN_ID, CLOB_BASE_URL
from ..engine.market_state import MarketMetadataCache
from ..trading.balance_checker import BalanceChecker
from ..trading.rate_limiter import RateLimiter, RateLimiterSet
from .base import (
    AllowanceError,
    AuthenticationError,
    BaseExchange,
    BookLevel,
    ConnectionError,
    ExchangeCapability,
    ExchangeError,
    MarketInfo,
    OrderBook,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    OrderError,
    Position,
    RateLimitError,
    RetryPolicy,
    TimeInForce,
    TradeSignal,
)
from .order_math import PreparedOrder, prepare_order

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration for reads
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 0.5  # seconds
RETRY_MAX_WAIT = 4.0  # seconds

# Positions at or below this share count are dust
DUST_SHARES = 0.001

TRANSIENT_ERRORS = (ConnectionError, RateLimitError)

AUTH_MARKERS = ("invalid signature", "unauthorized", "api key", "invalid l2", "l2 auth")


def _error_message(exc: Exception) -> str:
    return str(getattr(exc, "error_msg", None) or exc).lower()


def classify_sdk_error(exc: Exception) -> Exception:
    """
    Map a py-clob-client / requests exception onto the exchange hierarchy.

    Args:
        exc: Exception raised by a synchronous client call.

    Returns:
        An ExchangeError subclass instance (not raised).
    """
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
    message = _error_message(exc)

    if status in (401, 403) or any(marker in message for marker in AUTH_MARKERS):
        return AuthenticationError(message)
    if "allowance" in message and "balance" not in message:
        return AllowanceError(message)
    if status == 429:
        return RateLimitError(message)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ConnectionError(message)
    if status is not None and status >= 500:
        return ConnectionError(message)
    if "not enough balance / allowance" in message:
        # Ambiguous: let the retry loop try an allowance refresh first
        return AllowanceError(message)
    return OrderError(message)


def classify_rejection(message: str) -> OrderErrorCode:
    """Map an exchange rejection message onto a typed order outcome."""
    text = message.lower()
    if "balance" in text:
        return OrderErrorCode.INSUFFICIENT_FUNDS
    if "minimum" in text or "min size" in text:
        return OrderErrorCode.SKIPPED_MIN_SIZE
    if "liquidity" in text or "no match" in text or "couldn't be fully filled" in text:
        return OrderErrorCode.SKIPPED_NO_LIQUIDITY
    return OrderErrorCode.FAILED


class PolymarketExchange(BaseExchange):
    """
    Live Polymarket adapter using py-clob-client.

    SECURITY WARNING:
    - Never commit credentials to git
    - Use environment variables or .env file
    - Start with small amounts
    - Test with the paper exchange first

    Example:
        exchange = PolymarketExchange(private_key=key, funder=proxy_wallet)
        await exchange.connect()
        result = await exchange.create_order(
            OrderParams(market_id=cid, token_id=tid, side=OrderSide.BUY, size_usd=10)
        )
    """

    def __init__(
        self,
        private_key: str,
        funder: str,
        clob_client: Any = None,
        data_api: Optional[DataApiClient] = None,
        balance_checker: Optional[BalanceChecker] = None,
        limiters: Optional[RateLimiterSet] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = API_TIMEOUT,
        signature_type: int = 2,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            private_key: Signing key (hex, with or without 0x).
            funder: Proxy wallet address holding the funds.
            clob_client: Preconfigured ClobClient (built in connect() if None).
            data_api: Data API client.
            balance_checker: On-chain USDC reader/writer.
            limiters: Rate limiters for this adapter instance.
            retry_policy: Order placement retry policy.
            timeout: Per-call timeout in seconds.
            signature_type: 2 for Gnosis Safe proxy wallets, 0 for EOAs.
        """
        super().__init__()
        self._name = "polymarket"

        self.private_key = private_key if private_key.startswith("0x") or not private_key else f"0x{private_key}"
        self.funder = funder
        self.signature_type = signature_type
        self.timeout = timeout

        self._client = clob_client
        self._data_api = data_api or DataApiClient(timeout=timeout)
        self._balance_checker = balance_checker
        self._limiters = limiters or RateLimiterSet.polymarket_defaults()
        self._retry_policy = retry_policy or RetryPolicy()

        # Last successfully enriched view per token, used when enrichment fails
        self._last_known: dict[str, Position] = {}
        # Static fields (title, slug, image) for enrichment; sync reads state fresh
        self.metadata = MarketMetadataCache(loader=lambda market_id: self.get_market(market_id))

    @property
    def capabilities(self) -> frozenset[ExchangeCapability]:
        caps = {
            ExchangeCapability.MIDPOINT,
            ExchangeCapability.PUBLIC_TRADES,
            ExchangeCapability.PORTFOLIO_VALUE,
            ExchangeCapability.RESTING_ORDERS,
        }
        if self._balance_checker is not None and self._balance_checker.can_sign:
            caps.add(ExchangeCapability.CASHOUT)
        return frozenset(caps)

    # =========================================================================
    # Session
    # =========================================================================

    async def connect(self) -> None:
        if not self.private_key:
            raise AuthenticationError("POLYMARKET_PRIVATE_KEY not set")
        if not self.funder:
            raise AuthenticationError("POLYMARKET_FUNDER not set")

        if self._client is None:
            from py_clob_client.client import ClobClient

            self._client = ClobClient(
                CLOB_BASE_URL,
                key=self.private_key,
                chain_id=CHAIN_ID,
                funder=self.funder,
                signature_type=self.signature_type,
            )

        if self._balance_checker is None:
            self._balance_checker = BalanceChecker(
                private_key=self.private_key if self.signature_type == 0 else "",
            )

        await self.refresh_credentials()
        self.is_connected = True
        logger.info(f"Polymarket adapter connected (funder={self.funder})")

    async def disconnect(self) -> None:
        self.is_connected = False
        logger.info("Polymarket adapter disconnected")

    async def refresh_credentials(self) -> None:
        """Re-derive L2 API credentials via the key-derivation handshake."""

        def _derive() -> None:
            creds = self._client.create_or_derive_api_creds()
            self._client.set_api_creds(creds)

        try:
            await asyncio.wait_for(asyncio.to_thread(_derive), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionError("Credential derivation timed out") from e
        except Exception as e:
            raise AuthenticationError(f"Credential derivation failed: {e}") from e
        logger.info("API credentials derived")

    # =========================================================================
    # Call helpers
    # =========================================================================

    async def _call(
        self,
        limiter: RateLimiter,
        func: Callable[..., T],
        *args: Any,
        operation: str = "API call",
    ) -> T:
        """
        Run a synchronous client call in a thread with timeout and mapping.

        Raises:
            ExchangeError: Mapped from the underlying exception.
        """

        async def _task() -> T:
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ConnectionError(f"{operation} timed out after {self.timeout}s") from e
            except (AuthenticationError, AllowanceError, ConnectionError, OrderError, RateLimitError):
                raise
            except Exception as e:
                raise classify_sdk_error(e) from e

        return await limiter.submit(_task)

    async def _read(
        self,
        limiter: RateLimiter,
        func: Callable[..., T],
        *args: Any,
        operation: str = "API call",
    ) -> T:
        """Idempotent read with transient-error retries."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                return await self._call(limiter, func, *args, operation=operation)

    # =========================================================================
    # Queries
    # =========================================================================

    async def fetch_balance(self, address: Optional[str] = None) -> float:
        return await self._read(
            self._limiters.market,
            self._balance_checker.get_balance,
            address or self.funder,
            operation="fetch_balance",
        )

    async def get_order_book(self, token_id: str) -> Optional[OrderBook]:
        try:
            summary = await self._read(
                self._limiters.market, self._client.get_order_book, token_id, operation="get_order_book"
            )
        except OrderError as e:
            logger.debug(f"No order book for {token_id[:16]}: {e}")
            return None
        return self._parse_book(token_id, summary)

    @staticmethod
    def _parse_book(token_id: str, summary: Any) -> OrderBook:
        def _levels(raw: Any) -> list[BookLevel]:
            levels = []
            for level in raw or []:
                price = level["price"] if isinstance(level, dict) else level.price
                size = level["size"] if isinstance(level, dict) else level.size
                levels.append(BookLevel(price=float(price), size=float(size)))
            return levels

        get = summary.get if isinstance(summary, dict) else lambda key: getattr(summary, key, None)
        tick = get("tick_size")
        min_size = get("min_order_size")
        return OrderBook(
            token_id=token_id,
            # API returns bids ascending and asks descending; store best first
            bids=sorted(_levels(get("bids")), key=lambda lvl: lvl.price, reverse=True),
            asks=sorted(_levels(get("asks")), key=lambda lvl: lvl.price),
            tick_size=float(tick) if tick else None,
            min_order_size=float(min_size) if min_size else None,
        )

    async def get_market(self, market_id: str) -> Optional[MarketInfo]:
        try:
            raw = await self._read(
                self._limiters.market, self._client.get_market, market_id, operation="get_market"
            )
        except OrderError as e:
            # 4xx other than auth: the exchange does not know this market
            logger.debug(f"Market {market_id} not found: {e}")
            return None
        if not raw:
            return None
        return self._parse_market(raw)

    @staticmethod
    def _parse_market(raw: dict[str, Any]) -> MarketInfo:
        rewards = raw.get("rewards") or {}
        max_spread = rewards.get("max_spread")
        return MarketInfo(
            market_id=raw.get("condition_id", ""),
            question=raw.get("question", ""),
            slug=raw.get("market_slug", ""),
            image=raw.get("image") or raw.get("icon") or "",
            active=bool(raw.get("active", False)),
            closed=bool(raw.get("closed", False)),
            archived=bool(raw.get("archived", False)),
            accepting_orders=bool(raw.get("accepting_orders", False)),
            tick_size=float(raw["minimum_tick_size"]) if raw.get("minimum_tick_size") else None,
            min_order_size=float(raw["minimum_order_size"]) if raw.get("minimum_order_size") else None,
            tokens=[
                {
                    "token_id": str(t.get("token_id")),
                    "outcome": t.get("outcome", ""),
                    "price": t.get("price"),
                    "winner": bool(t.get("winner", False)),
                }
                for t in raw.get("tokens") or []
            ],
            # CLOB reports reward spreads in cents
            rewards_max_spread=float(max_spread) / 100 if max_spread else None,
            rewards_min_size=float(rewards["min_size"]) if rewards.get("min_size") else None,
            raw=raw,
        )

    async def get_midpoint(self, token_id: str) -> Optional[float]:
        try:
            result = await self._read(
                self._limiters.market, self._client.get_midpoint, token_id, operation="get_midpoint"
            )
        except OrderError:
            return None
        mid = result.get("mid") if isinstance(result, dict) else result
        return float(mid) if mid not in (None, "") else None

    async def fetch_public_trades(self, address: str, limit: int = 20) -> list[TradeSignal]:
        return await self._read(
            self._limiters.trades,
            self._data_api.get_trades,
            address,
            limit,
            operation="fetch_public_trades",
        )

    async def get_portfolio_value(self, address: str) -> float:
        return await self._read(
            self._limiters.trades, self._data_api.get_value, address, operation="get_portfolio_value"
        )

    async def get_positions(self, address: Optional[str] = None) -> list[Position]:
        """
        Fetch positions and enrich them with live metadata and midpoints.

        Enrichment runs concurrently per position. Metadata comes from a TTL
        cache; midpoints are always live. A failed lookup keeps the
        last-known price and metadata instead of dropping the position.
        """
        raw_positions = await self._read(
            self._limiters.trades,
            self._data_api.get_positions,
            address or self.funder,
            operation="get_positions",
        )

        live = [p for p in raw_positions if float(p.get("size") or 0) > DUST_SHARES]
        enriched = await asyncio.gather(*(self._enrich(raw) for raw in live))
        return list(enriched)

    async def _enrich(self, raw: dict[str, Any]) -> Position:
        token_id = str(raw.get("asset"))
        market_id = raw.get("conditionId", "")
        last = self._last_known.get(token_id)

        shares = float(raw.get("size") or 0)
        entry = float(raw.get("avgPrice") or 0)
        position = Position(
            token_id=token_id,
            market_id=market_id,
            shares=shares,
            entry_price=entry,
            current_price=float(raw.get("curPrice") or (last.current_price if last else entry)),
            invested_value=float(raw.get("initialValue") or shares * entry),
            outcome=raw.get("outcome") or (last.outcome if last else ""),
            title=raw.get("title") or (last.title if last else ""),
            slug=raw.get("slug") or (last.slug if last else ""),
            image=raw.get("icon") or (last.image if last else ""),
        )

        market, midpoint = await asyncio.gather(
            self.metadata.get(market_id),
            self.get_midpoint(token_id),
            return_exceptions=True,
        )

        if isinstance(market, MarketInfo):
            position.title = market.question or position.title
            position.slug = market.slug or position.slug
            position.image = market.image or position.image
            position.outcome = market.outcome_for(token_id) or position.outcome
        elif isinstance(market, Exception):
            logger.warning(f"Metadata enrichment failed for {market_id}: {market}")

        if isinstance(midpoint, float):
            position.current_price = midpoint
        elif isinstance(midpoint, Exception):
            logger.warning(f"Midpoint enrichment failed for {token_id[:16]}: {midpoint}")

        self._last_known[token_id] = position
        return position

    # =========================================================================
    # Orders
    # =========================================================================

    async def create_order(self, params: OrderParams) -> OrderResult:
        market, book = await asyncio.gather(
            self.get_market(params.market_id),
            self.get_order_book(params.token_id),
            return_exceptions=True,
        )
        if not isinstance(market, MarketInfo) or not isinstance(book, OrderBook):
            reason = market if isinstance(market, Exception) else book
            logger.warning(f"Order rejected, market data unavailable for {params.token_id[:16]}: {reason}")
            return OrderResult.rejected(OrderErrorCode.SKIPPED_NO_LIQUIDITY, "Market or order book unavailable")

        prepared = prepare_order(params, book, market)
        if isinstance(prepared, OrderResult):
            logger.info(f"Order skipped: {prepared.error} ({prepared.message})")
            return prepared

        neg_risk = bool(market.raw.get("neg_risk", False))
        policy = self._retry_policy
        recovered: set[type[Exception]] = set()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._post_order(prepared, neg_risk)
                return self._order_result(response, prepared)
            except ConnectionError as e:
                # Non-idempotent write: never resubmit blindly
                logger.error(f"Order submission outcome unknown for {prepared.token_id[:16]}: {e}")
                return OrderResult.rejected(OrderErrorCode.UNKNOWN, str(e))
            except (AuthenticationError, AllowanceError) as e:
                if not policy.should_retry(e, attempt, recovered):
                    if isinstance(e, AuthenticationError):
                        raise
                    return OrderResult.rejected(OrderErrorCode.INSUFFICIENT_FUNDS, str(e))
                recovered.add(policy.kind_of(e))
                logger.warning(f"Order attempt {attempt} failed ({type(e).__name__}), recovering: {e}")
                try:
                    await self._recover(e, prepared)
                except AllowanceError as recover_error:
                    logger.error(f"Allowance refresh failed for {prepared.token_id[:16]}: {recover_error}")
                    return OrderResult.rejected(OrderErrorCode.INSUFFICIENT_FUNDS, str(recover_error))
            except (OrderError, RateLimitError) as e:
                code = classify_rejection(str(e))
                logger.warning(f"Order rejected ({code}): {e}")
                return OrderResult.rejected(code, str(e))

    async def _recover(self, error: Exception, order: PreparedOrder) -> None:
        """
        Recover from one auth or allowance failure before the next attempt.

        Raises:
            AuthenticationError: Credentials could not be re-derived.
            AllowanceError: Neither the CLOB nor the chain approval went through.
        """
        if isinstance(error, AuthenticationError):
            await self.refresh_credentials()
            return

        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        try:
            await self._call(
                self._limiters.orders,
                self._client.update_balance_allowance,
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
                operation="update_balance_allowance",
            )
            if self._balance_checker is not None and self._balance_checker.can_sign:
                await asyncio.wait_for(
                    asyncio.to_thread(self._balance_checker.ensure_allowance, order.notional),
                    timeout=self.timeout * 10,
                )
        except Exception as e:
            raise AllowanceError(f"Allowance refresh failed: {e}") from e

    async def _post_order(self, order: PreparedOrder, neg_risk: bool) -> dict[str, Any]:
        from py_clob_client.clob_types import OrderArgs, OrderType, PartialCreateOrderOptions
        from py_clob_client.order_builder.constants import BUY, SELL

        order_args = OrderArgs(
            token_id=order.token_id,
            price=order.price,
            size=order.shares,
            side=BUY if order.side == OrderSide.BUY else SELL,
        )
        options = PartialCreateOrderOptions(tick_size=f"{order.tick_size:g}", neg_risk=neg_risk)
        order_type = OrderType.FOK if order.time_in_force == TimeInForce.FOK else OrderType.GTC

        def _sign_and_post() -> dict[str, Any]:
            signed = self._client.create_order(order_args, options)
            return self._client.post_order(signed, order_type)

        response = await self._call(self._limiters.orders, _sign_and_post, operation="post_order")
        if not response:
            raise OrderError("Order returned empty response")

        error_msg = response.get("errorMsg") or ""
        if not response.get("success", True) or error_msg:
            mapped = classify_sdk_error(OrderError(error_msg or "order rejected"))
            raise mapped
        return response

    @staticmethod
    def _order_result(response: dict[str, Any], order: PreparedOrder) -> OrderResult:
        status = str(response.get("status", "")).lower()
        tx_hashes = response.get("transactionsHashes") or response.get("transactionHashes") or []

        shares_filled = 0.0
        price_filled = order.price
        if status == "matched" or (order.time_in_force == TimeInForce.FOK and status != "live"):
            making = float(response.get("makingAmount") or 0)
            taking = float(response.get("takingAmount") or 0)
            # BUY: making=USDC paid, taking=shares received. SELL is the reverse.
            usd, shares = (making, taking) if order.side == OrderSide.BUY else (taking, making)
            shares_filled = shares or order.shares
            if usd and shares:
                price_filled = usd / shares

        logger.info(
            f"Order {status or 'posted'}: {order.side} {order.shares:g} {order.token_id[:12]} "
            f"@ {order.price} (filled {shares_filled:g} @ {price_filled:.4f})"
        )
        return OrderResult(
            success=True,
            order_id=response.get("orderID") or response.get("orderId"),
            tx_hash=tx_hashes[0] if tx_hashes else None,
            shares_filled=shares_filled,
            price_filled=price_filled,
            raw=response,
        )

    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel a resting order.

        Returns:
            True if cancelled, False if the exchange no longer holds it.

        Raises:
            ConnectionError: The outcome is unknown; the order may still rest.
        """
        try:
            result = await self._call(
                self._limiters.orders, self._client.cancel, order_id, operation="cancel_order"
            )
        except OrderError as e:
            logger.warning(f"Cancel rejected for {order_id}: {e}")
            return False
        canceled = (result or {}).get("canceled") or []
        return order_id in canceled

    async def cashout(self, amount: float, destination: str) -> str:
        if not self.supports(ExchangeCapability.CASHOUT):
            return await super().cashout(amount, destination)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._balance_checker.transfer, destination, amount),
                timeout=self.timeout * 10,
            )
        except asyncio.TimeoutError as e:
            # The transfer may still land; callers must not resend blindly
            raise ConnectionError(f"Cashout of ${amount:.2f} timed out") from e
        except Exception as e:
            raise ExchangeError(f"Cashout of ${amount:.2f} failed: {e}") from e
