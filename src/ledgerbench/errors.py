"""Error taxonomy.

Only ``SetupFailure`` is allowed to end a run. Everything else is converted
into a result (a rejected outcome, an unresolved handle, a failed check).
"""


class LedgerError(Exception):
    """Transport or protocol error talking to the ledger."""


class SetupFailure(Exception):
    """The run cannot start: ledger unreachable, sequence numbers or required accounts unreadable."""


class SubmissionRejected(Exception):
    """The ledger refused a submission at the submit boundary."""

    def __init__(self, reason: str, *, code: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code
