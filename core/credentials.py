import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional

from config.settings import CREDENTIAL_LENGTH, CREDENTIAL_TTL_SECONDS
from core.logger import log_event
from core.models import EphemeralCredential, VMMetadata, utcnow
from core.store import StateStore

ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_secret(length: int = CREDENTIAL_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class CredentialIssuer:
    """
    One-time, time-boxed connection secrets kept in a VM's metadata.

    There is no read-only accessor: ``retrieve`` always removes
    the credential it returns, and an expired credential is removed without
    being returned. Secrets are never logged.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], datetime] = utcnow,
        ttl_seconds: int = CREDENTIAL_TTL_SECONDS,
        length: int = CREDENTIAL_LENGTH,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.length = length

    def issue(self, vm_id: str) -> Optional[EphemeralCredential]:
        credential = EphemeralCredential(
            secret=generate_secret(self.length),
            expires_at=self.clock() + self.ttl,
        )

        def _store(record: VMMetadata) -> EphemeralCredential:
            # replaces any credential that is still live
            record.credential = credential
            return credential

        update = self.store.mutate_metadata(vm_id, _store)
        if not update.applied:
            return None
        log_event(f"[credentials] Issued credential for VM {vm_id}, expires_at={credential.expires_at.isoformat()}")
        return update.outcome

    def retrieve(self, vm_id: str) -> Optional[EphemeralCredential]:
        now = self.clock()

        def _consume(record: VMMetadata) -> Optional[EphemeralCredential]:
            credential = record.credential
            record.credential = None
            if credential is None or credential.expires_at < now:
                return None
            return credential

        update = self.store.mutate_metadata(vm_id, _consume)
        if not update.applied:
            return None
        if update.outcome is None:
            log_event(f"[credentials] No live credential for VM {vm_id}")
        else:
            log_event(f"[credentials] Credential for VM {vm_id} consumed")
        return update.outcome

    def verify(self, vm_id: str, presented: str) -> bool:
        """Consume the VM's credential and compare it with what the client sent."""
        credential = self.retrieve(vm_id)
        if credential is None or not presented:
            return False
        return secrets.compare_digest(credential.secret, presented)
