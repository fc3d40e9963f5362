"""
Error categories of the chair monitor.
None of them aborts a monitoring session.
"""


class ChairMonitorError(Exception):
    """Base class for monitor errors"""


class ClassificationError(ChairMonitorError):
    """Malformed or missing sensor reading"""


class PersistenceError(ChairMonitorError):
    """Durable store read or write failed"""


class ModelError(ChairMonitorError):
    """Predictor training or prediction failed"""


class ConcurrencyViolation(ChairMonitorError):
    """A transition was attempted while another one was in flight"""
