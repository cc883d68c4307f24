"""coinvalue - source-weighted price aggregation and forecasting for collectible coins."""

__version__ = "0.1.0"
