"""
Tablefill Server API Module
REST and SSE endpoints for starting, cancelling and following enrichment runs
"""

from .enrichment import router as enrichment_router

__all__ = [
    "enrichment_router",
]
