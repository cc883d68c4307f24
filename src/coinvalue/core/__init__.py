"""coinvalue.core - Foundation types, config, and exceptions."""

from coinvalue.core.config import (
    AggregationConfig,
    APIConfig,
    CoinValueConfig,
    FeedConfig,
    ForecastConfig,
    IngestionConfig,
    LearningConfig,
    RegistryConfig,
    StorageConfig,
    load_config,
)
from coinvalue.core.exceptions import (
    CoinValueError,
    ConfigError,
    InsufficientDataError,
    RateUnavailableError,
    SourceError,
    SourceTimeoutError,
    StaleReliabilityError,
    StorageError,
    ValidationError,
)
from coinvalue.core.models import (
    AggregatedEstimate,
    Category,
    CorrectionRecord,
    FeedbackBatchReport,
    ForecastPoint,
    Horizon,
    IngestReport,
    ItemIdentifier,
    LearningEvent,
    LearningInsights,
    LearningState,
    PendingConversion,
    PerformanceMetric,
    PriceObservation,
    RawObservation,
    RiskLevel,
    SourceId,
    SourceRecord,
    StorageBackend,
    TrendDirection,
    TrendForecast,
)

__all__ = [
    # Type aliases
    "ItemIdentifier",
    "SourceId",
    "Category",
    # Enums
    "Horizon",
    "TrendDirection",
    "RiskLevel",
    "LearningState",
    "StorageBackend",
    # Source / observation models
    "SourceRecord",
    "RawObservation",
    "PriceObservation",
    "PendingConversion",
    # Estimate / forecast models
    "AggregatedEstimate",
    "ForecastPoint",
    "TrendForecast",
    # Learning models
    "LearningEvent",
    "CorrectionRecord",
    "PerformanceMetric",
    "LearningInsights",
    # Reports
    "IngestReport",
    "FeedbackBatchReport",
    # Config
    "CoinValueConfig",
    "StorageConfig",
    "RegistryConfig",
    "FeedConfig",
    "IngestionConfig",
    "AggregationConfig",
    "ForecastConfig",
    "LearningConfig",
    "APIConfig",
    "load_config",
    # Exceptions
    "CoinValueError",
    "ConfigError",
    "ValidationError",
    "InsufficientDataError",
    "SourceError",
    "SourceTimeoutError",
    "StaleReliabilityError",
    "RateUnavailableError",
    "StorageError",
]
