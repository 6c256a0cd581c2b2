"""Error taxonomy for the capture pipeline.

Only PermissionDenied reaches callers of ``CaptureScheduler.start()``. The
rest are raised inside a stage and converted at the stage boundary: stream
errors become status events, extraction and encode failures become absent
values, and persistence errors are reported without halting capture.
"""


class RecallError(Exception):
    """Base class for all pipeline errors."""
    pass


class PermissionDenied(RecallError):
    """Screen capture is not authorized on this system."""
    pass


class StreamSetupFailure(RecallError):
    """The capture stream could not be opened."""
    pass


class StreamFaulted(RecallError):
    """The capture stream reported a terminal delivery error."""
    pass


class ExtractionFailure(RecallError):
    """OCR could not be run on a frame."""
    pass


class ImageEncodeFailure(RecallError):
    """A frame could not be encoded and written as a screenshot."""
    pass


class PersistenceError(RecallError):
    """A capture event could not be written to the event store."""
    pass
