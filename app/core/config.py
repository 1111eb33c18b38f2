# app/core/config.py
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Aura x402 Gateway"
    API_PREFIX: str = "/api"

    # --- x402 payment gateway ---
    X402_ENABLED: bool = True
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_FACILITATOR_URL: str = "https://stack.perkos.xyz/api/v2/x402"

    # Default network is advertised as defaultNetwork in 402 responses
    X402_NETWORK: str = "avalanche"
    # Comma-separated legacy names, first entry wins when X402_NETWORK is unsupported
    X402_SUPPORTED_NETWORKS: str = "avalanche,base,celo,ethereum"

    # Public origin used to build full resource URLs (e.g. https://aura.perkos.xyz).
    # When unset the inbound request URL is used.
    X402_RESOURCE_BASE_URL: Optional[str] = None

    # JSON objects, e.g. X402_ROUTE_PRICES='{"/api/ai/summarize": "0.03"}'
    X402_ROUTE_PRICES: Dict[str, Decimal] = {}
    X402_RPC_URLS: Dict[str, str] = {}
    X402_DOMAIN_VERSIONS: Dict[str, str] = {}

    X402_FACILITATOR_TIMEOUT_SECONDS: float = 8.0
    X402_RPC_TIMEOUT_SECONDS: float = 5.0
    X402_MAX_TIMEOUT_SECONDS: int = 30

    X402_AUDIT_ENABLED: bool = False
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    def supported_network_list(self) -> List[str]:
        """Parse X402_SUPPORTED_NETWORKS into an ordered list of legacy names."""
        return [n.strip() for n in self.X402_SUPPORTED_NETWORKS.split(",") if n.strip()]

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
