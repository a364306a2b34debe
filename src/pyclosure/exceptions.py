"""Exception taxonomy for closure analysis and (un)serialization.

Three failure kinds exist, each with its own propagation rule:

    - ClosureAnalysisError: the function's source could not be read, parsed,
      located, or disambiguated. Always fatal to the current ``analyze`` call.
    - ClosureSerializationError: analysis failed while a carrier lazily
      captured its data. The carrier catches this one and emits a
      ClosureSerializationWarning instead, so pickling itself never fails.
    - ClosureUnserializationError: signature mismatch, undecodable payload,
      wrong payload type, or corrupted closure code. Always surfaced.
"""


class ClosureError(Exception):
    """Base class for every error raised by pyclosure."""


class ClosureAnalysisError(ClosureError):
    """Raised when a closure's source cannot be located or analyzed."""


class ClosureSerializationError(ClosureError):
    """Raised when a closure's data cannot be captured for serialization."""


class ClosureUnserializationError(ClosureError):
    """Raised when a payload cannot be turned back into a closure."""


class ClosureSerializationWarning(UserWarning):
    """Non-fatal diagnostic emitted when a carrier serializes an empty shell."""
