"""
Chain Context Providers

The Transaction Builder never talks to a node.  Chain id, nonce and gas
parameters come from an injected ChainContextProvider and are frozen into a
ChainContext snapshot for each descriptor.

Providers:
  - StaticChainContextProvider:  fixed values, optional local nonce counter
  - JsonRpcChainContextProvider: Ethereum JSON-RPC over httpx
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from itertools import count
from typing import Any, Dict, Optional

import httpx

from ..constants import DEFAULT_CHAIN_ID, DEFAULT_GAS_PRICE, RPC_TIMEOUT
from ..exceptions import ChainContextError
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GasEstimate:
    gas_price: int
    gas_limit: Optional[int] = None     # None: use the builder's per-call default


@dataclass(frozen=True)
class ChainContext:
    """Everything chain-dependent a single descriptor needs."""
    chain_id: int
    nonce: int
    gas_price: int
    gas_limit: Optional[int] = None

    def with_nonce_offset(self, offset: int) -> ChainContext:
        """Context for the ``offset``-th extra transaction from the same sender."""
        return ChainContext(self.chain_id, self.nonce + offset, self.gas_price, self.gas_limit)


class ChainContextProvider(ABC):
    """Narrow capability onto chain state."""

    @abstractmethod
    async def chain_id(self) -> int:
        ...

    @abstractmethod
    async def current_nonce(self, address: str) -> int:
        ...

    @abstractmethod
    async def gas_estimate(self) -> GasEstimate:
        ...

    async def snapshot(self, address: str) -> ChainContext:
        """Collect a ChainContext for transactions sent by ``address``."""
        chain_id, nonce, gas = await asyncio.gather(
            self.chain_id(), self.current_nonce(address), self.gas_estimate()
        )
        return ChainContext(chain_id=chain_id, nonce=nonce, gas_price=gas.gas_price, gas_limit=gas.gas_limit)

    async def aclose(self) -> None:
        """Release provider resources."""


class StaticChainContextProvider(ChainContextProvider):
    """
    Fixed chain parameters.

    With ``track_nonces`` each call to ``current_nonce`` hands out the next
    nonce for that address, which is enough for a dev chain with a single
    writer.
    """

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        gas_price: int = DEFAULT_GAS_PRICE,
        gas_limit: Optional[int] = None,
        nonce: int = 0,
        track_nonces: bool = False,
    ):
        self._chain_id = chain_id
        self._gas = GasEstimate(gas_price=gas_price, gas_limit=gas_limit)
        self._nonce = nonce
        self._track_nonces = track_nonces
        self._counters: Dict[str, count] = {}

    async def chain_id(self) -> int:
        return self._chain_id

    async def current_nonce(self, address: str) -> int:
        if not self._track_nonces:
            return self._nonce
        counter = self._counters.setdefault(address.lower(), count(self._nonce))
        return next(counter)

    async def gas_estimate(self) -> GasEstimate:
        return self._gas


class JsonRpcChainContextProvider(ChainContextProvider):
    """Reads chain id, pending nonce and gas price from an Ethereum node."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = RPC_TIMEOUT,
        gas_limit: Optional[int] = None,
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._gas_limit = gas_limit
        self._chain_id: Optional[int] = None
        self._request_ids = count(1)

    async def _call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": list(params),
        }
        logger.debug(f"--> {method} {self.url}")
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.RequestError as e:
            logger.warning(f"<-- {method} {self.url} NETWORK_ERROR: {e}")
            raise ChainContextError(f"{method} failed: node unreachable") from e
        except (httpx.HTTPStatusError, ValueError) as e:
            logger.warning(f"<-- {method} {self.url} ERROR: {e}")
            raise ChainContextError(f"{method} failed: {e}") from e

        if not isinstance(body, dict):
            logger.warning(f"<-- {method} {self.url} ERROR: unexpected response {body!r}")
            raise ChainContextError(f"{method} failed: response is not a JSON-RPC object")
        if body.get("error"):
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ChainContextError(f"{method} failed: {message}")
        return body.get("result")

    @staticmethod
    def _quantity(value: Any, method: str) -> int:
        try:
            return int(value, 16)
        except (TypeError, ValueError):
            raise ChainContextError(f"{method} returned a malformed quantity: {value!r}")

    async def chain_id(self) -> int:
        # Chain id never changes for a given endpoint
        if self._chain_id is None:
            self._chain_id = self._quantity(await self._call("eth_chainId"), "eth_chainId")
        return self._chain_id

    async def current_nonce(self, address: str) -> int:
        result = await self._call("eth_getTransactionCount", address, "pending")
        return self._quantity(result, "eth_getTransactionCount")

    async def gas_estimate(self) -> GasEstimate:
        price = self._quantity(await self._call("eth_gasPrice"), "eth_gasPrice")
        return GasEstimate(gas_price=price, gas_limit=self._gas_limit)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
