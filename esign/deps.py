from dataclasses import dataclass
from typing import Callable, Optional

from . import config
from .audit import AuditLedger
from .certification import CertificationEngine
from .db import make_engine
from .notifications import EmailNotifier, Notifier
from .repository import Repository
from .storage import ArtifactStore, MinioStore
from .utils import utcnow
from .verification import SignerVerificationService
from .workflow import EnvelopeWorkflow


@dataclass
class Services:
    repo: Repository
    ledger: AuditLedger
    notifier: Notifier
    store: ArtifactStore
    verification: SignerVerificationService
    workflow: EnvelopeWorkflow
    certification: CertificationEngine


def build_services(
    engine=None,
    notifier: Optional[Notifier] = None,
    store: Optional[ArtifactStore] = None,
    clock: Callable = utcnow,
    on_completed: Optional[Callable[[int], None]] = None,
    jurisdiction: str = config.COMPLIANCE_JURISDICTION,
    include_summary: bool = config.INCLUDE_SIGNATURE_SUMMARY,
) -> Services:
    """Wire the components together; collaborators are injected, never looked up."""
    repo = Repository(engine if engine is not None else make_engine())
    ledger = AuditLedger(repo)
    notifier = notifier if notifier is not None else EmailNotifier()
    store = store if store is not None else MinioStore()
    verification = SignerVerificationService(repo, ledger, notifier, clock=clock)
    workflow = EnvelopeWorkflow(
        repo, ledger, verification, notifier, clock=clock, jurisdiction=jurisdiction, on_completed=on_completed
    )
    certification = CertificationEngine(
        repo, ledger, store, jurisdiction=jurisdiction, include_summary=include_summary, clock=clock
    )
    return Services(repo, ledger, notifier, store, verification, workflow, certification)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        on_completed = None
        if config.CERTIFY_ON_COMPLETION:
            from .worker import enqueue_certification
            on_completed = enqueue_certification
        _services = build_services(on_completed=on_completed)
    return _services
