# app/x402/tokens.py
"""
ERC-20 token introspection for EIP-712 domain construction.

The facilitator rebuilds the EIP-712 signing domain from the name/version we
send in PaymentRequirements.extra, so the name has to match what the token
contract itself reports. This module reads name(), symbol() and decimals()
over plain JSON-RPC eth_call and caches the result for the process lifetime.

Contract metadata cannot change after deployment, so cache entries never
expire. Failed lookups are not cached.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException

from app.x402.networks import NetworkCatalog

logger = logging.getLogger(__name__)

# 4-byte function selectors
NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"


class TokenIntrospectionError(Exception):
    """Raised when a token contract read fails or returns undecodable data."""


@dataclass(frozen=True)
class TokenInfo:
    """Self-reported metadata of a deployed ERC-20 contract."""
    address: str
    name: str
    decimals: int
    chain_id: int
    symbol: Optional[str] = None


class TokenInfoCache:
    """
    Thread-safe read-through cache keyed by (lowercased address, network).

    Created once at startup and injected into TokenIntrospector.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], TokenInfo] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(address: str, network: str) -> Tuple[str, str]:
        return (address.lower(), network)

    def get(self, address: str, network: str) -> Optional[TokenInfo]:
        with self._lock:
            return self._entries.get(self.key(address, network))

    def put(self, address: str, network: str, info: TokenInfo) -> None:
        with self._lock:
            self._entries[self.key(address, network)] = info

    def clear(self) -> None:
        """Clear all entries (useful for testing)."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _strip_hex(value: str) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise TokenIntrospectionError(f"Invalid eth_call result: {value!r}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as e:
        raise TokenIntrospectionError(f"Invalid hex in eth_call result: {e}")


def decode_abi_string(result_hex: str) -> str:
    """
    Decode an eth_call result that returns `string` (or legacy `bytes32`).

    Dynamic strings are laid out as offset, length, data. Some old tokens
    (e.g. MKR) return a right-padded bytes32 instead.
    """
    raw = _strip_hex(result_hex)
    if not raw:
        raise TokenIntrospectionError("Empty eth_call result")

    if len(raw) == 32:
        text = raw.rstrip(b"\x00").decode("utf-8", errors="ignore")
    else:
        if len(raw) < 64:
            raise TokenIntrospectionError("Truncated ABI string")
        offset = int.from_bytes(raw[0:32], "big")
        if offset + 32 > len(raw):
            raise TokenIntrospectionError("ABI string offset out of range")
        length = int.from_bytes(raw[offset:offset + 32], "big")
        start = offset + 32
        end = start + length
        if end > len(raw):
            raise TokenIntrospectionError("ABI string length out of range")
        text = raw[start:end].decode("utf-8", errors="ignore")

    text = text.strip()
    if not text:
        raise TokenIntrospectionError("Token returned an empty string")
    return text


def decode_abi_uint(result_hex: str) -> int:
    """Decode an eth_call result that returns a single uint."""
    raw = _strip_hex(result_hex)
    if not raw:
        raise TokenIntrospectionError("Empty eth_call result")
    return int.from_bytes(raw[:32], "big")


class TokenIntrospector:
    """Reads token metadata from chain, memoized in a TokenInfoCache."""

    def __init__(
        self,
        catalog: NetworkCatalog,
        cache: Optional[TokenInfoCache] = None,
        timeout: float = 5.0,
    ):
        self.catalog = catalog
        self.cache = cache if cache is not None else TokenInfoCache()
        self.timeout = timeout

    def _eth_call(self, rpc_url: str, to: str, data: str) -> str:
        """
        Perform a read-only eth_call against the latest block.

        Raises:
            TokenIntrospectionError: On transport, HTTP or RPC errors
        """
        try:
            response = requests.post(
                rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": "eth_call",
                    "params": [{"to": to, "data": data}, "latest"],
                    "id": 1
                },
                timeout=self.timeout
            )
            response.raise_for_status()
            result = response.json()
        except RequestException as e:
            raise TokenIntrospectionError(f"RPC request to {rpc_url} failed: {e}")
        except ValueError as e:
            raise TokenIntrospectionError(f"RPC response is not JSON: {e}")

        if not isinstance(result, dict):
            raise TokenIntrospectionError(f"Invalid RPC response: expected an object, got {type(result).__name__}")

        if "error" in result:
            raise TokenIntrospectionError(f"RPC error: {result['error']}")

        if "result" not in result:
            raise TokenIntrospectionError("Invalid RPC response: missing 'result' field")

        return result["result"]

    def _read(self, address: str, network: str) -> TokenInfo:
        rpc_url = self.catalog.rpc_url(network)

        name = decode_abi_string(self._eth_call(rpc_url, address, NAME_SELECTOR))
        decimals = decode_abi_uint(self._eth_call(rpc_url, address, DECIMALS_SELECTOR))
        if decimals > 255:
            raise TokenIntrospectionError(f"decimals() out of range: {decimals}")

        symbol = None
        try:
            symbol = decode_abi_string(self._eth_call(rpc_url, address, SYMBOL_SELECTOR))
        except TokenIntrospectionError as e:
            logger.debug(f"x402: symbol() unavailable for {address} on {network}: {e}")

        return TokenInfo(
            address=address,
            name=name,
            decimals=decimals,
            chain_id=self.catalog.numeric_chain_id(network),
            symbol=symbol,
        )

    def introspect(self, address: str, network: str) -> Optional[TokenInfo]:
        """
        Get token metadata for a contract on a network.

        Args:
            address: Token contract address
            network: Legacy network name or CAIP-2 id

        Returns:
            TokenInfo, or None when the contract could not be read. Callers
            fall back to the catalog defaults.
        """
        legacy_network = self.catalog.to_legacy(network)

        cached = self.cache.get(address, legacy_network)
        if cached is not None:
            return cached

        try:
            info = self._read(address, legacy_network)
        except TokenIntrospectionError as e:
            logger.warning(f"x402: Token introspection failed for {address} on {legacy_network}: {e}")
            return None

        self.cache.put(address, legacy_network, info)
        logger.info(
            f"x402: Detected token {address} on {legacy_network}: "
            f"name={info.name!r} symbol={info.symbol!r} decimals={info.decimals}"
        )
        return info
