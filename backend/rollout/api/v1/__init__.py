from rollout.api.v1.routes import api_router

__all__ = ["api_router"]
