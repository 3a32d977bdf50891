from __future__ import annotations


class TripCalError(Exception):
    kind = "error"


class SourceError(TripCalError):
    kind = "source_error"


class SourceUnavailable(SourceError):
    kind = "source_unavailable"


class SourceMalformed(SourceError):
    kind = "source_malformed"


class TargetError(TripCalError):
    kind = "target_error"


class TargetUnavailable(TargetError):
    kind = "target_unavailable"


class TargetRejected(TargetError):
    kind = "target_rejected"


class SegmentIncomplete(TripCalError):
    """Reason name for segments the normalizer skips. Never raised past the normalizer."""

    kind = "segment_incomplete"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, TripCalError):
        return exc.kind
    return type(exc).__name__
