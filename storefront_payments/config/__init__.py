"""Configuration package for storefront payments."""
from .settings import GatewayConfig, GatewayEnvironment, Settings, get_settings

__all__ = ["GatewayConfig", "GatewayEnvironment", "Settings", "get_settings"]
