"""
Error types for ODX server discovery

Every per-query failure is a QueryError subclass. Callers that fan out
queries (scanner, aggregator) catch QueryError and treat it as
"server not present".
"""


class DiscoveryError(Exception):
    """Base class for discovery errors"""


class QueryError(DiscoveryError):
    """A single query did not produce a usable answer"""

    kind = 'query'

    def __init__(self, message: str, address=None):
        super().__init__(message)
        self.address = address


class QueryTransportError(QueryError):
    """Socket could not be created, bound or sent on"""

    kind = 'transport'


class QueryTimeoutError(QueryError):
    """No valid response within the deadline"""

    kind = 'timeout'


class QueryProtocolError(QueryError):
    """Response received but failed tag/shape validation"""

    kind = 'protocol'


class ConfigurationError(DiscoveryError, ValueError):
    """Invalid scan configuration or criteria"""


class ScanInProgressError(DiscoveryError):
    """A scan is already running on this scanner"""
