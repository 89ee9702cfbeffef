"""Payment-transaction lifecycle service for the storefront checkout."""

__version__ = "0.1.0"
