"""
Error taxonomy for table_trace.

Every failure the core recovers from has a concrete type here so the
recovery path (exclude the item and continue) can be exercised directly.
"""


class TableTraceError(Exception):
    """Base class for all table_trace errors"""


class ConfigurationError(TableTraceError, ValueError):
    """Invalid configuration values"""


class InvalidChangeEventError(TableTraceError, ValueError):
    """A change event failed boundary validation"""


class FilterParseError(TableTraceError):
    """A filter clause could not be parsed"""

    def __init__(self, clause: str):
        super().__init__(f"Unparseable filter clause: {clause!r}")
        self.clause = clause


class RowIdentityError(TableTraceError):
    """A row identity could not be derived"""


class DiffSerializationError(TableTraceError):
    """A column value could not be encoded for comparison"""

    def __init__(self, column: str, cause: Exception):
        super().__init__(f"Cannot compare column '{column}': {cause}")
        self.column = column
        self.cause = cause
