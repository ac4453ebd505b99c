"""
Exceptions raised by the import pipeline and the grade engine.

ImportAborted subclasses stop a whole import before anything is written.
RowError subclasses describe one rejected row; the orchestrator turns them
into ``ImportResult.errors`` lines and moves on.
"""


class CadetCoreError(Exception):
    pass


# whole-file
class ImportAborted(CadetCoreError):
    pass


class UnsupportedFormat(ImportAborted):
    pass


class UnresolvableLink(ImportAborted):
    pass


class ProcessingTimeout(ImportAborted):
    pass


class CapacityExceeded(ImportAborted):
    def __init__(self, subject: str, current: int, incoming: int, cap: int):
        self.subject = subject
        self.current = current
        self.incoming = incoming
        self.cap = cap
        super().__init__(
            f"{subject} roster cap is {cap}: {current} existing + {incoming} new would exceed it"
        )


class ExtractionFailed(ImportAborted):
    pass


class UnknownTrainingDay(ImportAborted):
    pass


# per-row
class RowError(CadetCoreError):
    def __init__(self, message: str, row_index: int | str | None = None, raw: str = ""):
        self.row_index = row_index
        self.raw = raw
        super().__init__(message)

    def describe(self) -> str:
        msg = str(self)
        if self.raw:
            msg = f"{msg}: {self.raw!r}"
        if self.row_index is None:
            return msg
        return f"row {self.row_index}: {msg}"


class AmbiguousRow(RowError):
    pass


class NoIdentifiableCandidate(RowError):
    pass


class NoMatch(RowError):
    pass


class DuplicateIdentity(RowError):
    pass


class InvalidLedgerRow(RowError):
    pass


# direct API misuse
class UnknownPerson(CadetCoreError, KeyError):
    def __str__(self):
        return Exception.__str__(self)
