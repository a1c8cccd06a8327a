"""Exception hierarchy shared by the activator services."""


class ActivatorError(Exception):
    """Base class for all activator errors."""


class ExtractionError(ActivatorError):
    """The message does not carry a usable address or activation link."""


class TransportError(ActivatorError):
    """Base class for verification transport failures."""


class RateLimited(TransportError):
    """The remote service is throttling requests (403/503 page)."""


class FormSubmissionError(TransportError):
    """The resubmit form could not be found or its submission did not land."""


class TransportFatal(TransportError):
    """Transport or protocol failure with no automated recovery."""


class UnrecognizedPage(TransportFatal):
    """The activation page matched none of the known markers."""


class RetryBudgetExhausted(TransportFatal):
    """A configured retry ceiling was reached before a terminal answer."""


class StoreError(ActivatorError):
    """Account store connectivity or write failure."""


class MailboxError(ActivatorError):
    """IMAP connection, search, fetch or flag failure."""
