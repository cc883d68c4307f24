"""coinvalue.learning - Feedback application and performance metrics."""

from coinvalue.learning.feedback import FeedbackLoop, extract_corrections

__all__ = ["FeedbackLoop", "extract_corrections"]
