"""MealGate package exposing the FastAPI application factory."""
from .api.main import create_app

__all__ = ["create_app"]
