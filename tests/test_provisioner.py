import httpx
import pytest

from couponload.errors import ProvisioningError
from couponload.provisioner import BootstrapProvisioner


def test_provision_creates_actors_creator_and_coupon(issuer, issuer_client):
    run = BootstrapProvisioner(issuer_client, batch_size=7).provision(actor_count=20, quantity=5)

    assert sorted(run.actor_ids) == list(range(1, 21))
    assert len(set(run.actor_ids)) == 20
    assert run.creator_id == 1
    assert run.coupon_id == 1
    assert run.quantity == 5
    assert issuer.coupons[run.coupon_id] == 5
    assert issuer.requests[("POST", "/api/users")] == 20
    assert issuer.requests[("POST", "/api/creators")] == 1
    assert issuer.requests[("POST", "/api/coupons")] == 1


def test_actor_ids_line_up_with_submitted_names(issuer, issuer_client):
    actor_ids = BootstrapProvisioner(issuer_client, batch_size=3).create_actors(8)
    assert [issuer.users[actor_id] for actor_id in actor_ids] == [f"user_{i}" for i in range(1, 9)]


def test_failed_actor_creation_aborts(issuer, issuer_client):
    issuer.fail_user_creation_at = 4
    with pytest.raises(ProvisioningError, match="unexpected status 500"):
        BootstrapProvisioner(issuer_client, batch_size=5).provision(actor_count=10, quantity=3)
    assert issuer.requests[("POST", "/api/coupons")] == 0


def test_missing_result_payload_aborts():
    def handler(request):
        return httpx.Response(200, json={"result": {}})

    with httpx.Client(base_url="http://issuer.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProvisioningError, match="result.creatorId"):
            BootstrapProvisioner(client).create_creator()


def test_transport_failure_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with httpx.Client(base_url="http://issuer.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProvisioningError) as excinfo:
            BootstrapProvisioner(client).provision(actor_count=2, quantity=1)
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


def test_setup_timeout_aborts_between_batches(issuer_client):
    ticks = iter([0.0, 0.5, 5.0])
    provisioner = BootstrapProvisioner(
        issuer_client,
        batch_size=2,
        timeout_s=1.0,
        clock=lambda: next(ticks),
    )
    with pytest.raises(ProvisioningError, match="setup exceeded"):
        provisioner.provision(actor_count=6, quantity=1)


def test_invalid_batch_size(issuer_client):
    with pytest.raises(ValueError):
        BootstrapProvisioner(issuer_client, batch_size=0)
