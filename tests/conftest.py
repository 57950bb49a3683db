# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures and configuration.

Every test that touches the store gets its own SQLite database file, built
from the ORM metadata and stamped with the current schema version. Time is
pinned with a FixedClock and outbound email goes to a recording sender, so
services are constructed with those collaborators injected.
"""

import os
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any app modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///./orderdesk-test.db",
    "JWT_SECRET": "test-secret-key-for-testing-only",
    "PAYMENT_WEBHOOK_SIGNING_KEY": "whsec-test-signing-key",
    "LOG_LEVEL": "WARNING",
    "LOG_TO_FILES": "false",
    "NOTIFICATIONS_ENABLED": "false",
    "REMINDER_SEND_DELAY_SECONDS": "0",
})

# Now import app modules after environment is set
from app.business.clock import FixedClock
from app.main import create_app
from app.security.auth import Actor, create_admin_token, create_token
from app.services.audit import AuditSink
from app.services.invoice_manager import InvoiceManager, get_invoice_manager
from app.services.notifications import EmailMessage, NotificationError
from app.services.order_state_machine import OrderStateMachine, get_order_state_machine
from app.services.payment_reconciler import PaymentReconciler, get_payment_reconciler
from app.services.reminder_scheduler import ReminderScheduler, get_reminder_scheduler
from app.services.tax_service import TaxService, get_tax_service
from app.storage.configuration import ConfigurationStore
from app.storage.db import bootstrap_schema, close_database, init_database
from tests.factories.data_factories import OrderFactory, WebhookFactory


WEBHOOK_SIGNING_KEY = "whsec-test-signing-key"

# Monday 2 March 2026, 15:00 UTC
FIXED_NOW = datetime(2026, 3, 2, 15, 0, 0)


# ==== COLLABORATOR DOUBLES ==== #


class RecordingSender:
    """
    Notification sender that keeps every delivered message.

    ``fail`` makes every send raise and ``fail_recipients`` fails sends to
    those addresses only. ``on_send`` is awaited before each delivery.
    """

    def __init__(self):
        self.sent: List[EmailMessage] = []
        self.fail = False
        self.fail_recipients: Set[str] = set()
        self.on_send: Optional[Callable[[EmailMessage], Awaitable[None]]] = None

    async def send(self, message: EmailMessage) -> None:
        if self.on_send is not None:
            await self.on_send(message)
        if self.fail or message.to in self.fail_recipients:
            raise NotificationError("Email provider unreachable", template=message.template)
        self.sent.append(message)

    def templates(self) -> List[str]:
        return [message.template for message in self.sent]


# ==== DATABASE FIXTURES ==== #


@pytest_asyncio.fixture
async def database(tmp_path):
    """
    Fresh SQLite database for one test.

    Resets any engine left over from a previous test, creates all tables
    and stamps the schema version.
    """
    await close_database()
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'orderdesk.db'}")
    await bootstrap_schema()
    yield
    await close_database()


@pytest.fixture
def orders(database):
    return OrderFactory()


# ==== SERVICE FIXTURES ==== #


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def admin():
    return Actor(actor_id="admin-1", role="admin")


@pytest.fixture
def config_store():
    return ConfigurationStore()


@pytest.fixture
def audit():
    return AuditSink()


@pytest.fixture
def state_machine(database, sender, config_store, audit):
    return OrderStateMachine(notifier=sender, audit=audit, config_store=config_store)


@pytest.fixture
def tax_service(state_machine, config_store, audit):
    return TaxService(state_machine=state_machine, config_store=config_store, audit=audit)


@pytest.fixture
def invoice_manager(state_machine, sender, config_store, audit, clock):
    return InvoiceManager(
        state_machine=state_machine,
        notifier=sender,
        config_store=config_store,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def reminder_scheduler(database, sender, config_store, audit, clock):
    return ReminderScheduler(
        notifier=sender,
        config_store=config_store,
        audit=audit,
        clock=clock,
        send_delay=0,
    )


@pytest.fixture
def reconciler(state_machine, invoice_manager, sender, config_store, audit, clock):
    return PaymentReconciler(
        state_machine=state_machine,
        invoice_manager=invoice_manager,
        notifier=sender,
        config_store=config_store,
        audit=audit,
        clock=clock,
        signing_key=WEBHOOK_SIGNING_KEY,
        replay_window_seconds=300,
    )


# ==== APPLICATION FIXTURES ==== #


@pytest.fixture
def test_app(state_machine, tax_service, invoice_manager, reminder_scheduler, reconciler):
    """Application with every service dependency bound to the test doubles."""
    app = create_app()
    app.dependency_overrides[get_order_state_machine] = lambda: state_machine
    app.dependency_overrides[get_tax_service] = lambda: tax_service
    app.dependency_overrides[get_invoice_manager] = lambda: invoice_manager
    app.dependency_overrides[get_reminder_scheduler] = lambda: reminder_scheduler
    app.dependency_overrides[get_payment_reconciler] = lambda: reconciler
    return app


@pytest_asyncio.fixture
async def client(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_admin_token('admin-1')}"}


@pytest.fixture
def viewer_headers():
    return {"Authorization": f"Bearer {create_token('viewer-1', role='viewer')}"}


@pytest.fixture
def webhooks(clock):
    """Signed webhook bodies timestamped at the pinned clock instant."""
    return WebhookFactory(
        signing_key=WEBHOOK_SIGNING_KEY,
        timestamp=int(clock.now().replace(tzinfo=timezone.utc).timestamp()),
    )
