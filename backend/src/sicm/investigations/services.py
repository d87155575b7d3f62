"""Service wiring for Suggested Investigations.

The host wiki provides user lookups, block checks, global account lookups
and signal evaluators once at startup through :func:`configure_services`.
The ``get_*`` factories then build the services from those collaborators
and the settings.

Processes that do not embed the host (the CLI and the Celery worker) load
the registration from the module named by the ``host_module`` setting, see
:func:`load_host_configuration`.

Usage:
    configure_services(
        users=wiki_users,
        block_checks=[LocalBlockCheck(block_store)],
        indefinite_block_checks=[LocalBlockCheck(block_store)],
        signal_evaluators=[SharedEmailEvaluator()],
    )
    manager = get_case_manager()
"""

import importlib
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..config import get_settings
from .autoclose import AutoCloseService
from .block_checks import BlockCheck, GlobalAccountLookup, IndefiniteBlockCheck, UserIdentityLookup
from .composite import CompositeBlockChecker, CompositeIndefiniteBlockChecker
from .dispatcher import CrossWikiAutoCloseDispatcher
from .errors import ServicesNotConfiguredError
from .jobs import get_job_queue
from .lookup import CaseLookupService
from .manager import CaseManager
from .matching import SignalMatchService
from .signals import SignalEvaluator


@dataclass
class HostServices:
    """Collaborators provided by the host wiki."""

    users: UserIdentityLookup
    block_checks: list[BlockCheck] = field(default_factory=list)
    indefinite_block_checks: list[IndefiniteBlockCheck] = field(default_factory=list)
    global_accounts: GlobalAccountLookup | None = None
    signal_evaluators: list[SignalEvaluator] = field(default_factory=list)


_host: HostServices | None = None


def configure_services(
    users: UserIdentityLookup,
    block_checks: Sequence[BlockCheck] = (),
    indefinite_block_checks: Sequence[IndefiniteBlockCheck] = (),
    global_accounts: GlobalAccountLookup | None = None,
    signal_evaluators: Sequence[SignalEvaluator] = (),
) -> None:
    """Register the host collaborators used by every service."""
    global _host
    _host = HostServices(
        users=users,
        block_checks=list(block_checks),
        indefinite_block_checks=list(indefinite_block_checks),
        global_accounts=global_accounts,
        signal_evaluators=list(signal_evaluators),
    )


def load_host_configuration(target: str) -> None:
    """Import the host module that registers its collaborators.

    ``target`` is either ``package.module``, which must call
    :func:`configure_services` when imported, or ``package.module:function``,
    in which case the function is called with no arguments after import.

    Raises:
        ImportError: If the module cannot be imported
        AttributeError: If the module has no such function
    """
    module_name, _, function_name = target.partition(":")
    module = importlib.import_module(module_name)
    if function_name:
        getattr(module, function_name)()


def reset_services() -> None:
    """Forget the registered collaborators (for tests and shutdown)."""
    global _host
    _host = None


def get_host_services() -> HostServices:
    if _host is None:
        raise ServicesNotConfiguredError()
    return _host


def get_case_lookup() -> CaseLookupService:
    get_host_services()
    return CaseLookupService()


def get_case_manager() -> CaseManager:
    get_host_services()
    return CaseManager()


def get_dispatcher() -> CrossWikiAutoCloseDispatcher:
    host = get_host_services()
    settings = get_settings()
    return CrossWikiAutoCloseDispatcher(
        global_accounts=host.global_accounts,
        current_wiki_id=settings.wiki_id,
        central_auth_enabled=settings.central_auth_enabled,
    )


def get_autoclose_service() -> AutoCloseService:
    host = get_host_services()
    return AutoCloseService(
        lookup=get_case_lookup(),
        manager=get_case_manager(),
        block_checker=CompositeIndefiniteBlockChecker(host.indefinite_block_checks),
        users=host.users,
        job_queue=get_job_queue(),
        dispatcher=get_dispatcher(),
    )


def get_signal_match_service() -> SignalMatchService:
    host = get_host_services()
    return SignalMatchService(
        manager=get_case_manager(),
        evaluators=host.signal_evaluators,
        block_checker=CompositeBlockChecker(host.block_checks),
        job_queue=get_job_queue(),
    )
