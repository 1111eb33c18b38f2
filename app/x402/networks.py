# app/x402/networks.py
"""
Network catalog for x402 payments.

Maps between the two naming schemes clients use for EVM networks:
- legacy names ("base", "avalanche-fuji")
- CAIP-2 chain-agnostic ids ("eip155:8453", "eip155:43113")

and carries per-network configuration: the USDC contract address, the
EIP-712 domain name/version to advertise when the token contract cannot be
introspected, and the JSON-RPC endpoint used for introspection.

Lookups are total: unknown input resolves to the configured default network
instead of raising, so malformed client input cannot crash a request. Use
resolve() when an unknown network has to be detected.
"""
import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkConfig:
    """Static configuration for one EVM network."""
    name: str
    chain_id: int
    usdc_address: str
    token_name: str
    domain_version: str
    rpc_url: str
    display_name: str

    @property
    def caip2(self) -> str:
        return f"eip155:{self.chain_id}"


# Circle native USDC deployments
KNOWN_NETWORKS: Dict[str, NetworkConfig] = {
    "avalanche": NetworkConfig(
        name="avalanche",
        chain_id=43114,
        usdc_address="0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        token_name="USD Coin",
        domain_version="2",
        rpc_url="https://api.avax.network/ext/bc/C/rpc",
        display_name="Avalanche",
    ),
    "avalanche-fuji": NetworkConfig(
        name="avalanche-fuji",
        chain_id=43113,
        usdc_address="0x5425890298aed601595a70AB815c96711a31Bc65",
        token_name="USD Coin",
        domain_version="2",
        rpc_url="https://api.avax-test.network/ext/bc/C/rpc",
        display_name="Avalanche Fuji",
    ),
    "base": NetworkConfig(
        name="base",
        chain_id=8453,
        usdc_address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        token_name="USD Coin",
        domain_version="2",
        rpc_url="https://mainnet.base.org",
        display_name="Base",
    ),
    "base-sepolia": NetworkConfig(
        name="base-sepolia",
        chain_id=84532,
        usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        token_name="USDC",
        domain_version="2",
        rpc_url="https://sepolia.base.org",
        display_name="Base Sepolia",
    ),
    "celo": NetworkConfig(
        name="celo",
        chain_id=42220,
        usdc_address="0xcebA9300f2b948710d2653dD7B07f33A8B32118C",
        token_name="USDC",
        domain_version="2",
        rpc_url="https://forno.celo.org",
        display_name="Celo",
    ),
    "celo-sepolia": NetworkConfig(
        name="celo-sepolia",
        chain_id=11142220,
        usdc_address="0x2F25deB3848C207fc8E0c34035B3Ba7fC157602B",
        token_name="USDC",
        domain_version="2",
        rpc_url="https://forno.celo-sepolia.celo-testnet.org",
        display_name="Celo Sepolia",
    ),
    "ethereum": NetworkConfig(
        name="ethereum",
        chain_id=1,
        usdc_address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        token_name="USD Coin",
        domain_version="2",
        rpc_url="https://cloudflare-eth.com",
        display_name="Ethereum",
    ),
}


class NetworkCatalog:
    """Bidirectional legacy name <-> CAIP-2 mapping over the supported networks."""

    def __init__(
        self,
        networks: Iterable[NetworkConfig],
        default_network: Optional[str] = None,
    ):
        self._networks: Dict[str, NetworkConfig] = {}
        for network in networks:
            self._networks[network.name] = network
        if not self._networks:
            raise ValueError("NetworkCatalog requires at least one network")

        self._by_caip2: Dict[str, str] = {
            network.caip2: name for name, network in self._networks.items()
        }

        if default_network and default_network in self._networks:
            self._default = default_network
        else:
            if default_network:
                logger.warning(
                    f"x402: Default network '{default_network}' is not supported, "
                    f"using '{next(iter(self._networks))}'"
                )
            self._default = next(iter(self._networks))

    @property
    def default_network(self) -> str:
        return self._default

    @property
    def supported_networks(self) -> List[str]:
        """Legacy names in configured order."""
        return list(self._networks)

    def resolve(self, network: Optional[str]) -> Optional[str]:
        """
        Strictly resolve a legacy name or CAIP-2 id to a supported legacy name.

        Returns:
            The legacy name, or None when the network is not supported
        """
        if not network:
            return None
        value = network.strip()
        if value in self._networks:
            return value
        lowered = value.lower()
        if lowered in self._networks:
            return lowered
        return self._by_caip2.get(lowered)

    def is_supported(self, network: Optional[str]) -> bool:
        return self.resolve(network) is not None

    def to_legacy(self, network: Optional[str]) -> str:
        """Convert a CAIP-2 id or legacy name to a legacy name (default on unknown)."""
        resolved = self.resolve(network)
        if resolved is None:
            logger.debug(f"x402: Unknown network {network!r}, falling back to {self._default}")
            return self._default
        return resolved

    def config(self, network: Optional[str]) -> NetworkConfig:
        return self._networks[self.to_legacy(network)]

    def to_chain_id(self, network: Optional[str]) -> str:
        """Convert a legacy name (or CAIP-2 id) to its CAIP-2 id."""
        return self.config(network).caip2

    def numeric_chain_id(self, network: Optional[str]) -> int:
        return self.config(network).chain_id

    def stablecoin_address(self, network: Optional[str]) -> str:
        return self.config(network).usdc_address

    def domain_version(self, network: Optional[str]) -> str:
        return self.config(network).domain_version

    def token_name(self, network: Optional[str]) -> str:
        """Default EIP-712 domain name used when introspection is unavailable."""
        return self.config(network).token_name

    def rpc_url(self, network: Optional[str]) -> str:
        return self.config(network).rpc_url

    def display_name(self, network: Optional[str]) -> str:
        return self.config(network).display_name


def build_network_catalog(
    supported: Iterable[str],
    default_network: Optional[str] = None,
    rpc_urls: Optional[Mapping[str, str]] = None,
    domain_versions: Optional[Mapping[str, str]] = None,
) -> NetworkCatalog:
    """
    Build a catalog restricted to the supported networks.

    Args:
        supported: Legacy network names, in preference order. Unknown names
            are skipped with a warning.
        default_network: Legacy name of the default network
        rpc_urls: Per-network RPC URL overrides
        domain_versions: Per-network EIP-712 domain version overrides
    """
    rpc_urls = rpc_urls or {}
    domain_versions = domain_versions or {}

    networks = []
    for name in supported:
        base = KNOWN_NETWORKS.get(name.strip().lower())
        if base is None:
            logger.warning(f"x402: Ignoring unknown network in configuration: {name}")
            continue
        overrides = {}
        if base.name in rpc_urls:
            overrides["rpc_url"] = rpc_urls[base.name]
        if base.name in domain_versions:
            overrides["domain_version"] = domain_versions[base.name]
        networks.append(replace(base, **overrides) if overrides else base)

    if not networks:
        logger.warning("x402: No valid networks configured, falling back to avalanche")
        networks.append(KNOWN_NETWORKS["avalanche"])

    return NetworkCatalog(networks, default_network=default_network)
