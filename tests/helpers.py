from api.middleware.authentication import get_current_user
from fastapi_server import app


CUSTOMER = {
    "session_id": "sess-customer",
    "auth0_user_id": "auth0|customer",
    "email": "customer@example.com",
    "name": "Casey Customer",
    "is_admin": False,
    "virtfusion_user_id": 42,
}

ADMIN = {
    "session_id": "sess-admin",
    "auth0_user_id": "auth0|admin",
    "email": "admin@example.com",
    "name": "Ada Admin",
    "is_admin": True,
    "virtfusion_user_id": 1,
}


def vf_server(server_id=101, owner_id=42, suspended=False, status="running", name="web-1"):
    return {
        "id": server_id,
        "name": name,
        "uuid": f"uuid-{server_id}",
        "hostname": f"{name}.example.com",
        "status": status,
        "suspended": suspended,
        "owner": {"id": owner_id},
        "primaryIp": "203.0.113.10",
        "package": {"name": "Starter"},
        "hypervisor": {"name": "bne-hv1"},
        "specs": {"vcpu": 2, "ramMb": 2048, "diskGb": 50, "trafficGb": 2000},
        "os": "Ubuntu 24.04",
        "createdAt": "2026-01-01T00:00:00Z",
    }


def login_as(user):
    app.dependency_overrides[get_current_user] = lambda: dict(user)

