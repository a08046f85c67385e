# tests/conftest.py
"""
Shared fixtures for the journey engine test suite.

Every test function gets its own application (and with it a fresh service
registry) on an in-memory SQLite database. Builders create rows with explicit
timestamps so tests can drive the engine with a fixed ``now``.
"""
import os
import uuid
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

os.environ['FLASK_ENV'] = 'testing'

from app import create_app
from extensions import db
from crm_database import (
    Contact, ContactFlag, Journey, JourneyContact, JourneyNode, JourneyNodeExecution, Tenant
)
from services.enums import ExecutionStatus, JourneyContactStatus, JourneyStatus
from services.journey_collaborators import (
    ComplianceDecision, ComplianceGate, MessagingGateway, TelephonyGateway
)
from utils.datetime_utils import to_db_time

# Monday
MONDAY_10AM = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def new_id() -> str:
    """Node ids are UUIDs; tests pre-generate them to wire edges"""
    return str(uuid.uuid4())


def create_test_contact(**kwargs):
    """
    Helper function to create test contacts with default values.
    Used across multiple test files.
    """
    defaults = {
        'first_name': 'Test',
        'last_name': 'User',
        'phone': '+15551234567',
        'email': None
    }
    defaults.update(kwargs)
    return Contact(**defaults)


@pytest.fixture
def app():
    """A fresh application per test so singletons and caches never leak"""
    app = create_app(config_name='testing', test_config={
        'SERVER_NAME': 'localhost.localdomain'
    })
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    """
    Database session with every table created for this test and dropped after it.
    """
    with app.app_context():
        db.create_all()
        try:
            yield db.session
        finally:
            db.session.remove()
            db.drop_all()


@pytest.fixture
def services(app, db_session):
    """The application's service registry, inside the test's app context"""
    return app.services


@pytest.fixture
def gateways(app):
    """
    Replace the outbound collaborators with mocks.

    SMS sends return message id ``SM123``; calls return correlation id
    ``CALL-1``; the compliance gate allows everything.
    """
    messaging = Mock(spec=MessagingGateway)
    messaging.send_sms.return_value = {'id': 'SM123', 'status': 'queued', 'from': '+15550000000'}

    telephony = Mock(spec=TelephonyGateway)
    telephony.place_call.return_value = {'correlationId': 'CALL-1', 'from': '+15550000001'}

    compliance = Mock(spec=ComplianceGate)
    compliance.check_compliance.return_value = ComplianceDecision.allow()

    for name, instance in (('messaging_gateway', messaging),
                           ('telephony_gateway', telephony),
                           ('compliance_gate', compliance)):
        app.services.register(name, service=instance)
        app.services.clear_dependency_chain(name)

    return Mock(messaging=messaging, telephony=telephony, compliance=compliance)


# Builders

@pytest.fixture
def tenant(db_session):
    tenant = Tenant(name='Acme Roofing', timezone='UTC',
                    lead_statuses=['NEW', 'CONTACTED', 'QUALIFIED', 'DNC'])
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def make_contact(db_session, tenant):
    def make(**kwargs):
        kwargs.setdefault('tenant_id', tenant.id)
        contact = create_test_contact(**kwargs)
        db_session.add(contact)
        db_session.commit()
        return contact
    return make


@pytest.fixture
def contact(make_contact):
    return make_contact()


@pytest.fixture
def make_opt_out(db_session):
    def make(contact, applies_to='sms', flag_type='opted_out'):
        flag = ContactFlag(contact_id=contact.id, flag_type=flag_type, applies_to=applies_to)
        db_session.add(flag)
        db_session.commit()
        return flag
    return make


@pytest.fixture
def make_journey(db_session, tenant):
    def make(**kwargs):
        kwargs.setdefault('tenant_id', tenant.id)
        kwargs.setdefault('name', 'New Lead Follow-up')
        kwargs.setdefault('status', JourneyStatus.ACTIVE.value)
        journey = Journey(**kwargs)
        db_session.add(journey)
        db_session.commit()
        return journey
    return make


@pytest.fixture
def journey(make_journey):
    return make_journey()


@pytest.fixture
def make_node(db_session):
    """
    Insert a JourneyNode. ``minute`` orders creation: nodes built with a lower
    minute are older.
    """
    def make(journey, node_type, node_id=None, name=None, config=None, connections=None,
             minute=0):
        node = JourneyNode(
            id=node_id or new_id(),
            journey_id=journey.id,
            tenant_id=journey.tenant_id,
            type=node_type,
            name=name or node_type.title().replace('_', ' '),
            config=config or {},
            connections=connections or {},
            created_at=datetime(2023, 12, 1, 9, minute),
        )
        db_session.add(node)
        db_session.commit()
        return node
    return make


@pytest.fixture
def make_journey_contact(db_session):
    def make(journey, contact, status=JourneyContactStatus.ACTIVE.value, enrolled_at=MONDAY_10AM,
             current_node_id=None):
        journey_contact = JourneyContact(
            tenant_id=journey.tenant_id,
            journey_id=journey.id,
            contact_id=contact.id,
            status=status,
            current_node_id=current_node_id,
            enrolled_at=to_db_time(enrolled_at),
            created_at=to_db_time(enrolled_at),
        )
        db_session.add(journey_contact)
        db_session.commit()
        return journey_contact
    return make


@pytest.fixture
def make_execution(db_session):
    def make(node, journey_contact, status=ExecutionStatus.PENDING.value,
             scheduled_at=MONDAY_10AM, **kwargs):
        execution = JourneyNodeExecution(
            tenant_id=journey_contact.tenant_id,
            journey_id=journey_contact.journey_id,
            node_id=node.id,
            journey_contact_id=journey_contact.id,
            status=status,
            scheduled_at=to_db_time(scheduled_at),
            **kwargs
        )
        db_session.add(execution)
        db_session.commit()
        return execution
    return make
