"""
FastAPI route modules for the Trade FE engine.
"""

from tradefe_engine.api.market_data_routes import router as market_data_router

__all__ = ["market_data_router"]
