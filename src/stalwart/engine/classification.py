"""Error classification: map raw node failures onto FailureKind.

Deciding whether a failure is transient, permanent or node-level is business
logic, so it is delegated to an ErrorClassifier. The supervisor only reacts
to the classification.

DefaultErrorClassifier resolution order:
1. The taxonomy exceptions map to their own kind (SkipItem maps to SKIP)
2. Exceptions carrying a boolean ``retryable`` attribute (the convention used
   by HTTP/LLM client errors) map to TRANSIENT or PERMANENT
3. Everything else is PERMANENT: an unknown failure is never retried blindly
"""

from typing import Protocol

from stalwart.contracts.enums import FailureKind
from stalwart.contracts.errors import (
    FatalPipelineFault,
    NodeFault,
    PermanentItemFailure,
    SkipItem,
    TransientItemFailure,
)


class ErrorClassifier(Protocol):
    """Classifies a failure raised by SupervisedNode.process()."""

    def classify(self, error: BaseException) -> FailureKind:
        """Return how the supervisor should treat ``error``."""
        ...


class DefaultErrorClassifier:
    """Classifier based on the exception taxonomy and ``retryable`` flags.

    Example:
        classifier = DefaultErrorClassifier(transient=(TimeoutError, ConnectionError))
        classifier.classify(TimeoutError())   # FailureKind.TRANSIENT
    """

    def __init__(
        self,
        *,
        transient: tuple[type[BaseException], ...] = (),
        node_level: tuple[type[BaseException], ...] = (),
    ) -> None:
        """Initialize with optional extra exception types.

        Args:
            transient: Third-party exception types to treat as transient
            node_level: Third-party exception types to treat as node faults
        """
        self._transient = transient
        self._node_level = node_level

    def classify(self, error: BaseException) -> FailureKind:
        if isinstance(error, FatalPipelineFault):
            return FailureKind.FATAL
        if isinstance(error, NodeFault):
            return FailureKind.NODE
        if isinstance(error, SkipItem):
            return FailureKind.SKIP
        if isinstance(error, PermanentItemFailure):
            return FailureKind.PERMANENT
        if isinstance(error, TransientItemFailure):
            return FailureKind.TRANSIENT
        if self._node_level and isinstance(error, self._node_level):
            return FailureKind.NODE
        if self._transient and isinstance(error, self._transient):
            return FailureKind.TRANSIENT

        retryable = getattr(error, "retryable", None)
        if type(retryable) is bool:
            return FailureKind.TRANSIENT if retryable else FailureKind.PERMANENT
        return FailureKind.PERMANENT
