"""FastAPI application and routes."""
from .dependencies import ServiceContainer, assemble, build_container
from .main import create_app

__all__ = ["ServiceContainer", "assemble", "build_container", "create_app"]
