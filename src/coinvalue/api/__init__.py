"""coinvalue.api - REST binding over the valuation service."""

from coinvalue.api.app import create_app

__all__ = ["create_app"]
