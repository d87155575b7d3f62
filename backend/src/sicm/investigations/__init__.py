"""Suggested Investigations case management.

Signals are heuristics evaluated against users when something happens to
them. Users that match are filed into cases: a match whose value is already
recorded in an open case joins that case, anything else starts a new one.
Cases are resolved automatically once every user in them is indefinitely
blocked, including blocks placed on other wikis.

Main components:
- SignalMatchResult: Positive or negative outcome of one signal
- CompositeBlockChecker / CompositeIndefiniteBlockChecker: Combine block checks
- CaseManager: Creates and merges cases, changes their status
- CaseLookupService: Reads cases
- CrossWikiAutoCloseDispatcher: Asks other wikis to re-check a user's cases
- AutoCloseService: Queues and runs auto-close checks

Usage:
    from sicm.investigations import CaseStatus, SignalMatchResult
    from sicm.investigations.services import get_case_manager

    signal = SignalMatchResult.new_positive_result(
        "shared-email-domain", "example.org", allows_merging=True
    )
    case = await get_case_manager().create_case([user], [signal])
"""

from .block_checks import (
    BlockCheck,
    GlobalBlockCheck,
    GlobalIndefiniteBlockCheck,
    GlobalLockCheck,
    IndefiniteBlockCheck,
    LocalBlockCheck,
)
from .composite import CompositeBlockChecker, CompositeIndefiniteBlockChecker
from .errors import (
    CaseNotFoundError,
    ServicesNotConfiguredError,
    SignalMatchLogicError,
    SuggestedInvestigationsDisabledError,
    SuggestedInvestigationsError,
)
from .models import (
    BlockRecord,
    Case,
    CaseSignal,
    CaseStatus,
    CaseSummary,
    CaseUser,
    CaseUserInfoFlags,
    TriggerType,
    UserIdentity,
)
from .signals import (
    NegativeSignalMatch,
    PositiveSignalMatch,
    SignalEvaluator,
    SignalMatchResult,
)

__all__ = [
    # Models
    "BlockRecord",
    "Case",
    "CaseSignal",
    "CaseStatus",
    "CaseSummary",
    "CaseUser",
    "CaseUserInfoFlags",
    "TriggerType",
    "UserIdentity",
    # Signals
    "NegativeSignalMatch",
    "PositiveSignalMatch",
    "SignalEvaluator",
    "SignalMatchResult",
    # Block checks
    "BlockCheck",
    "IndefiniteBlockCheck",
    "LocalBlockCheck",
    "GlobalBlockCheck",
    "GlobalIndefiniteBlockCheck",
    "GlobalLockCheck",
    "CompositeBlockChecker",
    "CompositeIndefiniteBlockChecker",
    # Errors
    "SuggestedInvestigationsError",
    "SignalMatchLogicError",
    "CaseNotFoundError",
    "ServicesNotConfiguredError",
    "SuggestedInvestigationsDisabledError",
]
