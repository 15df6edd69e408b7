from __future__ import annotations
from dataclasses import dataclass

from schemas.models import CheckStatus
from logging_.engine_logger import get_engine_logger
from .cancel import CancelToken
from .scheduler import Checker
from .chain import check_domain

log = get_engine_logger()


@dataclass(frozen=True)
class ControlDomains:
    primary: str = "wikipedia.org"
    list_host: str = "raw.githubusercontent.com"


@dataclass
class ControlResults:
    primary: CheckStatus | None = None
    list_host: CheckStatus | None = None

    def to_dict(self) -> dict:
        return {
            "primary": self.primary.value if self.primary else None,
            "listHost": self.list_host.value if self.list_host else None,
        }


def run_control_checks(
        domains: ControlDomains,
        timeout_ms: int,
        token: CancelToken,
        checker: Checker = check_domain,
        run_id: str = "-",
) -> ControlResults:
    """
    Probes the two reference domains one after the other. Cancellation skips
    whatever is left; results gathered so far are kept.
    """
    results = ControlResults()
    for attr in ("primary", "list_host"):
        if token.is_cancelled():
            log.info(f"[{run_id}] Control checks cancelled before {attr}.")
            break
        domain = getattr(domains, attr)
        chain = checker(domain, timeout_ms, token)
        if chain.status is CheckStatus.PENDING:
            continue
        setattr(results, attr, chain.status)
        log.info(f"[{run_id}] Control {attr} ({domain}): {chain.status.value}")
    return results
