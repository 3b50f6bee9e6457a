from datetime import timedelta

from core.credentials import ALPHABET, CredentialIssuer, generate_secret


def test_generated_secret_uses_alphabet():
    secret = generate_secret(40)
    assert len(secret) == 40
    assert set(secret) <= set(ALPHABET)


def test_issue_then_retrieve_once(store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    issuer = CredentialIssuer(store, clock)

    issued = issuer.issue(vm.id)
    assert issued.expires_at == clock.now + timedelta(minutes=5)

    retrieved = issuer.retrieve(vm.id)
    assert retrieved.secret == issued.secret
    assert issuer.retrieve(vm.id) is None


def test_reissue_replaces_the_live_credential(store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    issuer = CredentialIssuer(store, clock)

    first = issuer.issue(vm.id)
    second = issuer.issue(vm.id)

    assert issuer.retrieve(vm.id).secret == second.secret != first.secret


def test_expired_credential_is_removed_not_returned(store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    issuer = CredentialIssuer(store, clock)
    issuer.issue(vm.id)

    clock.advance(minutes=5, microseconds=1)

    assert issuer.retrieve(vm.id) is None
    assert store.get_vm(vm.id).metadata_record.credential is None


def test_credential_at_exact_expiry_is_still_valid(store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    issuer = CredentialIssuer(store, clock)
    issued = issuer.issue(vm.id)

    clock.advance(minutes=5)

    assert issuer.retrieve(vm.id).secret == issued.secret


def test_credential_does_not_disturb_other_metadata(orchestrator, store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    orchestrator.extend_vm(tenant.id, vm.id)
    issuer = CredentialIssuer(store, clock)

    issuer.issue(vm.id)
    issuer.retrieve(vm.id)

    assert store.get_vm(vm.id).metadata_record.extensions == 1


def test_verify_consumes_even_on_mismatch(store, clock, tenant, ready_vm):
    vm = ready_vm(tenant.id)
    issuer = CredentialIssuer(store, clock)
    issued = issuer.issue(vm.id)

    assert issuer.verify(vm.id, "wrong") is False
    assert issuer.verify(vm.id, issued.secret) is False


def test_unknown_vm_gets_no_credential(store, clock):
    assert CredentialIssuer(store, clock).issue("does-not-exist") is None
