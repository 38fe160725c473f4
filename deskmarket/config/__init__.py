"""Configuration for the marketplace service"""

from deskmarket.config.loader import MarketplaceSettings, load_settings

__all__ = ["MarketplaceSettings", "load_settings"]
