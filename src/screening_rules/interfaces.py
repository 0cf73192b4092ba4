"""Abstract interfaces for collaborators outside the screening SDK.

Account management, institution configuration and crisis notification
delivery all live in other systems.  The SDK only depends on the narrow
contracts below; each ships a default implementation good enough for
local development and tests.

Typical wiring::

    orchestrator = ScreeningOrchestrator(
        evaluator=RuleEvaluator(),
        accounts=MyAccountService(...),
        institutions=StaticInstitutionDirectory({"inst-1": flow_id}),
        notifier=MyPagerNotifier(...),
    )
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from screening_rules.models.session import SessionInfo

logger = logging.getLogger(__name__)


class AccountDirectory(ABC):
    """Looks up accounts that take or administer screenings."""

    @abstractmethod
    async def account_exists(self, account_id: str) -> bool:
        """Return True when ``account_id`` names a known account."""
        ...

    @abstractmethod
    async def get_attributes(self, account_id: str) -> dict[str, Any]:
        """Attributes exposed to ``account`` conditions (e.g. age, institution).

        Returns
        -------
        dict
            Flat map of attribute name to scalar value.  Missing attributes
            make conditions referring to them evaluate to False.
        """
        ...


class InstitutionDirectory(ABC):
    """Per-institution configuration the orchestrator needs."""

    @abstractmethod
    async def provider_triage_flow_id(self, institution_id: str) -> str | None:
        """Flow id used for provider triage at this institution, if configured."""
        ...


class CrisisNotifier(ABC):
    """Receives a notification the first time a session indicates crisis.

    Called after the flag is written, inside the same request.  Failures are
    logged by the orchestrator and never undo the flag.
    """

    @abstractmethod
    async def notify(self, session: SessionInfo) -> None:
        ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


class PermissiveAccountDirectory(AccountDirectory):
    """Treats every non-blank id as a valid account with fixed attributes."""

    def __init__(self, attributes: dict[str, dict[str, Any]] | None = None) -> None:
        self._attributes = attributes or {}

    async def account_exists(self, account_id: str) -> bool:
        return bool(account_id and account_id.strip())

    async def get_attributes(self, account_id: str) -> dict[str, Any]:
        return dict(self._attributes.get(account_id, {}))


class StaticInstitutionDirectory(InstitutionDirectory):
    """Institution → provider-triage flow id, from a static mapping."""

    def __init__(self, provider_triage_flows: dict[str, str] | None = None) -> None:
        self._flows = dict(provider_triage_flows or {})

    async def provider_triage_flow_id(self, institution_id: str) -> str | None:
        return self._flows.get(institution_id)


class LoggingCrisisNotifier(CrisisNotifier):
    async def notify(self, session: SessionInfo) -> None:
        logger.warning(
            "Crisis indicated: session=%s target_account=%s patient_order=%s",
            session.session_id,
            session.target_account_id,
            session.patient_order_id,
        )
