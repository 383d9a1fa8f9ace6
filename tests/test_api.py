from __future__ import annotations

from tenant_identity.domain.contracts import CreateAccountInput
from tenant_identity.domain.tenant import TenantContext

ORG = {"X-Organization-ID": "org-api"}


def seed_account(service, email="ada@example.com", organization_id="org-api", **overrides):
    return service.create_account(
        TenantContext.for_organization(organization_id),
        CreateAccountInput(
            email=email,
            first_name=overrides.pop("first_name", "Ada"),
            last_name=overrides.pop("last_name", "Lovelace"),
            tos_agreement=True,
            **overrides,
        ),
    )


def test_register_account(api_client):
    client, _, repository = api_client
    response = client.post(
        "/v1/accounts",
        json={
            "email": "Ada@Example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "tos_agreement": True,
        },
        headers=ORG,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["email"] == "ada@example.com"
    assert body["organization_id"] == "org-api"
    assert body["full_name"] == "Ada Lovelace"
    assert body["name_initials"] == "AL"
    assert body["deactivated"] is False
    assert body["person_id"] in repository.people


def test_register_returns_field_errors(api_client):
    client, _, _ = api_client
    response = client.post(
        "/v1/accounts",
        json={"email": "nope", "first_name": "", "last_name": "Lovelace", "tos_agreement": False},
        headers=ORG,
    )
    assert response.status_code == 422
    errors = response.json()["detail"]["errors"]
    assert errors == {
        "first_name": ["can't be blank"],
        "email": ["is invalid"],
        "tos_agreement": ["must be accepted"],
    }


def test_register_requires_tos_field(api_client):
    client, _, _ = api_client
    response = client.post(
        "/v1/accounts",
        json={"email": "ada@example.com", "first_name": "Ada", "last_name": "Lovelace"},
        headers=ORG,
    )
    assert response.status_code == 422


def test_register_without_organization_header_uses_payload(api_client):
    client, _, _ = api_client
    response = client.post(
        "/v1/accounts",
        json={
            "email": "ada@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "tos_agreement": True,
            "organization_id": "org-admin",
        },
    )
    assert response.status_code == 201
    assert response.json()["organization_id"] == "org-admin"


def test_register_is_rate_limited_per_organization(api_client):
    client, _, _ = api_client
    statuses = [
        client.post(
            "/v1/accounts",
            json={
                "email": f"user{idx}@example.com",
                "first_name": "User",
                "last_name": str(idx),
                "tos_agreement": True,
            },
            headers=ORG,
        ).status_code
        for idx in range(3)
    ]
    assert statuses == [201, 201, 429]


def test_get_account_is_tenant_scoped(api_client):
    client, service, _ = api_client
    account = seed_account(service)

    assert client.get(f"/v1/accounts/{account.account_id}", headers=ORG).status_code == 200
    other = client.get(f"/v1/accounts/{account.account_id}", headers={"X-Organization-ID": "org-other"})
    assert other.status_code == 404


def test_email_change_is_rejected(api_client):
    client, service, _ = api_client
    account = seed_account(service)
    response = client.patch(
        f"/v1/accounts/{account.account_id}", json={"email": "new@example.com"}, headers=ORG
    )
    assert response.status_code == 422
    assert response.json()["detail"]["errors"] == {"email": ["email cannot be changed"]}

    renamed = client.patch(f"/v1/accounts/{account.account_id}", json={"first_name": "Augusta"}, headers=ORG)
    assert renamed.status_code == 200
    assert renamed.json()["full_name"] == "Augusta Lovelace"


def test_deactivated_account_is_denied_with_reason(api_client):
    client, service, _ = api_client
    account = seed_account(service)

    deactivated = client.post(f"/v1/accounts/{account.account_id}/deactivate", headers=ORG)
    assert deactivated.status_code == 200
    assert deactivated.json()["deactivated"] is True

    denied = client.post(f"/v1/accounts/{account.account_id}/authentication", headers=ORG)
    assert denied.status_code == 403
    assert denied.json()["detail"] == {"reason": "deactivated"}

    client.post(f"/v1/accounts/{account.account_id}/activate", headers=ORG)
    allowed = client.post(f"/v1/accounts/{account.account_id}/authentication", headers=ORG)
    assert allowed.status_code == 200
    assert allowed.json()["active_for_authentication"] is True


def test_invitation_flow(api_client):
    client, service, _ = api_client
    inviter = seed_account(service)

    issued = client.post(
        f"/v1/accounts/{inviter.account_id}/invitations",
        json={"email": "grace@example.com", "first_name": "Grace", "last_name": "Hopper"},
        headers=ORG,
    )
    assert issued.status_code == 201
    body = issued.json()
    assert body["account"]["invitation_pending"] is True
    assert body["account"]["invited_by_id"] == inviter.account_id

    accepted = client.post(
        "/v1/invitations/accept",
        json={"token": body["invitation_token"], "tos_agreement": True},
        headers=ORG,
    )
    assert accepted.status_code == 200
    assert accepted.json()["invitation_pending"] is False

    again = client.post(
        "/v1/invitations/accept",
        json={"token": body["invitation_token"], "tos_agreement": True},
        headers=ORG,
    )
    assert again.status_code == 404


def test_staff_endpoint(api_client):
    client, service, repository = api_client
    admin = seed_account(service, "admin@example.com")
    seed_account(service, "member@example.com")
    seed_account(service, "guest@example.com")
    repository.grant_role(admin.account_id, "admin")

    response = client.get("/v1/staff", headers=ORG)
    assert response.status_code == 200
    assert [item["account_id"] for item in response.json()] == [admin.account_id]


def test_search_accounts(api_client):
    client, service, _ = api_client
    seed_account(service)
    seed_account(service, "grace@example.com", first_name="Grace", last_name="Hopper")

    response = client.get("/v1/accounts", params={"first_name": "gra"}, headers=ORG)
    assert response.status_code == 200
    assert [item["email"] for item in response.json()] == ["grace@example.com"]


def test_people_endpoints(api_client):
    client, _, _ = api_client
    created = client.post(
        "/v1/people",
        json={"first_name": "Ada", "last_name": "Lovelace", "email": "Ada@Example.com"},
        headers=ORG,
    )
    assert created.status_code == 201
    person_id = created.json()["person_id"]
    assert created.json()["email"] == "Ada@Example.com"

    assert client.get(f"/v1/people/{person_id}", headers=ORG).status_code == 200
    assert client.get(f"/v1/people/{person_id}", headers={"X-Organization-ID": "org-other"}).status_code == 404


def test_account_history_lists_person_and_account_events(api_client):
    client, service, _ = api_client
    account = seed_account(service)
    other = seed_account(service, email="grace@example.com", first_name="Grace")
    tenant = TenantContext.for_organization("org-api")
    service.deactivate(tenant, account.account_id)
    service.activate(tenant, account.account_id)
    service.deactivate(tenant, other.account_id)

    resp = client.get(f"/v1/accounts/{account.account_id}/history", headers=ORG)
    assert resp.status_code == 200
    entries = resp.json()
    assert [entry["event_type"] for entry in entries] == [
        "person.created",
        "account.created",
        "account.deactivated",
        "account.activated",
    ]
    assert {entry["person_id"] for entry in entries} == {account.person_id}
    assert entries[0]["account_id"] is None


def test_account_history_is_tenant_scoped(api_client):
    client, service, _ = api_client
    account = seed_account(service)
    resp = client.get(
        f"/v1/accounts/{account.account_id}/history", headers={"X-Organization-ID": "org-other"}
    )
    assert resp.status_code == 404
    assert client.get(f"/v1/accounts/{account.account_id}/history").status_code == 200
