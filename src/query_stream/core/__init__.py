"""Classification, readiness and provider routing for query-stream.

The orchestrator lives in :mod:`query_stream.core.orchestrator`; it is not
re-exported here because the transport layer imports the classifier.
"""

from query_stream.core.classifier import ErrorClassifier, ErrorSignal, select_headline
from query_stream.core.readiness import DailyActionLedger, ReadinessGuard, ReadinessVariant
from query_stream.core.router import ProviderChain, ProviderRouter

__all__ = [
    "DailyActionLedger",
    "ErrorClassifier",
    "ErrorSignal",
    "ProviderChain",
    "ProviderRouter",
    "ReadinessGuard",
    "ReadinessVariant",
    "select_headline",
]
