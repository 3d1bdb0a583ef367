import pytest
from unittest.mock import create_autospec
from fastapi.testclient import TestClient

from fastapi_server import app
from services.virtfusion import VirtFusionService
from tests.helpers import CUSTOMER, ADMIN, login_as


@pytest.fixture
def client():
    """API client signed in as a regular customer"""
    login_as(CUSTOMER)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_client():
    login_as(ADMIN)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client():
    app.dependency_overrides.clear()
    yield TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def vf():
    """Configured VirtFusion service double"""
    service = create_autospec(VirtFusionService, instance=True)
    service.is_available.return_value = True
    return service
