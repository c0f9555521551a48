"""
Shared fixtures for the field-ops test suite

- Users for each role
- A fresh lifecycle manager per test, swapped into the operations app so
  views and tests share it
- A recording notifier for asserting alerts without touching the database
"""

import pytest
from django.apps import apps
from rest_framework.test import APIClient

from apps.notifications.services import Notifier
from apps.operations.services.lifecycle_service import OperationLifecycleManager
from apps.operations.services.record_store import DjangoRecordStore

RMA_DATA = {"serial": "FHTT1234", "modelo": "HG6143D"}

INSTALLATION_DATA = {
    "cidade": "Campinas",
    "modelo": "HG6143D",
    "plano": "500MB",
    "tipoServico": "instalacao",
    "servico": "SV-1001",
    "cliente": "Maria Souza",
    "serial": "FHTT00A1B2C3",
    "wifi": "Casa_Maria",
    "senha": "segredo123",
}

CTO_DATA = {"tipoSplitter": "1x8", "bairro": "Centro", "rua": "Rua das Flores"}


class RecordingNotifier:
    """Collects alerts in memory"""

    def __init__(self):
        self.broadcasts = []
        self.direct = []

    def broadcast(self, role, message, level="info", operation_id=None, sound=False):
        self.broadcasts.append({"role": role, "message": message, "level": level, "operation_id": operation_id, "sound": sound})
        return 1

    def notify_user(self, user_id, message, level="info", operation_id=None, sound=False):
        self.direct.append({"user_id": user_id, "message": message, "level": level, "operation_id": operation_id, "sound": sound})


@pytest.fixture
def technician(django_user_model):
    return django_user_model.objects.create_user(
        username="tech1", password="pass12345", first_name="Tech1", role=django_user_model.ROLE_TECHNICIAN
    )


@pytest.fixture
def other_technician(django_user_model):
    return django_user_model.objects.create_user(
        username="tech2", password="pass12345", first_name="Tech2", role=django_user_model.ROLE_TECHNICIAN
    )


@pytest.fixture
def operator(django_user_model):
    return django_user_model.objects.create_user(
        username="op1", password="pass12345", first_name="Op", last_name="One", role=django_user_model.ROLE_OPERATOR
    )


@pytest.fixture
def site_admin(django_user_model):
    return django_user_model.objects.create_user(
        username="boss", password="pass12345", first_name="Admin", role=django_user_model.ROLE_ADMIN
    )


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return DjangoRecordStore()


@pytest.fixture
def manager(db, store, recording_notifier, monkeypatch):
    """Unsubscribed manager; every change reaches the mirror through local apply"""
    manager = OperationLifecycleManager(store, notifier=recording_notifier, minutes_per_operation=15, strict_transitions=True)
    monkeypatch.setattr(apps.get_app_config("operations"), "lifecycle_manager", manager)
    return manager


@pytest.fixture
def live_manager(db, store, monkeypatch):
    """Manager wired to the real Notifier, as the running app builds it"""
    manager = OperationLifecycleManager(store, notifier=Notifier(), minutes_per_operation=15, strict_transitions=True)
    monkeypatch.setattr(apps.get_app_config("operations"), "lifecycle_manager", manager)
    return manager


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def client_for(api_client):
    def authenticate(user):
        api_client.force_authenticate(user=user)
        return api_client

    return authenticate
