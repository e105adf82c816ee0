"""Pytest configuration and fixtures for the job tracker tests."""

import pytest

from app import create_app
from models import db


@pytest.fixture
def app():
    """App on a private in-memory database with reference data seeded."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "LOG_LEVEL": "WARNING",
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    """Record store inside an application context."""
    with app.app_context():
        yield app.extensions["record_store"]


@pytest.fixture
def job_payload():
    return {
        "jobId": "job-100",
        "quantity": 10,
        "launchedPanels": 10,
        "material": "FR4",
        "customerName": "Acme",
        "partNo": "P1",
        "dueDate": "2025-01-01",
        "orderDate": "2024-12-01",
        "poNo": "PO",
    }
