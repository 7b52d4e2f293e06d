from fastapi import Request

from core.round_engine import RoundEngine


def get_engine(request: Request) -> RoundEngine:
    """FastAPI dependency：取得 lifespan 建立的 RoundEngine 單例"""
    return request.app.state.engine
