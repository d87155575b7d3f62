"""Exceptions raised by the Suggested Investigations services."""


class SuggestedInvestigationsError(Exception):
    """Base class for Suggested Investigations errors."""


class SignalMatchLogicError(SuggestedInvestigationsError):
    """Match-only data was requested from a negative signal match."""


class CaseNotFoundError(SuggestedInvestigationsError, LookupError):
    """No case exists with the requested ID."""

    def __init__(self, case_id: int):
        super().__init__(f"Case ID {case_id} does not exist")
        self.case_id = case_id


class SuggestedInvestigationsDisabledError(SuggestedInvestigationsError, RuntimeError):
    """The feature flag is off, so the case tables may not exist."""

    def __init__(self):
        super().__init__("Suggested Investigations is not enabled")


class ServicesNotConfiguredError(SuggestedInvestigationsError, RuntimeError):
    """A service was requested before the host registered its collaborators."""

    def __init__(self):
        super().__init__(
            "Suggested Investigations services are not configured; call configure_services() first"
        )
