# app/x402/__init__.py
"""
x402 Payment Gateway Module.

Gates priced endpoints behind x402 v2 micropayments settled in USDC through
an external facilitator.

Key components:
- routes: priced route registry
- networks: legacy name / CAIP-2 network catalog
- tokens: on-chain token metadata introspection and cache
- envelope: payment header decoding and encoding
- facilitator: verify/settle HTTP client
- gateway: authorize() orchestration
- middleware: FastAPI adapter
- audit: payment audit log

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.2.0"
