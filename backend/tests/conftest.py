"""
Shared test fixtures — file-backed SQLite async database + FastAPI client.

Strategy:
1. Set DATABASE_URL to SQLite before anything loads
2. Inject a fake compliance_engine.database module into sys.modules before
   compliance_engine.main imports it
3. Routers and the engine see our test session factory; the framework
   installer is rebuilt per test since the schema is recreated every time
"""
import os
import sys
import tempfile
import types
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# ── 1. Environment ──
# A file database: concurrent read sessions must see the same data
_TMP_DIR = tempfile.mkdtemp(prefix="compliance-engine-tests-")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["DEBUG"] = "false"

# ── 2. Test engine ──
TEST_ENGINE = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

TestSession = async_sessionmaker(
    TEST_ENGINE,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── 3. SQLite compat: WAL, explicit BEGIN so SAVEPOINTs nest ──
@event.listens_for(TEST_ENGINE.sync_engine, "connect")
def _sqlite_connect(dbapi_conn, connection_record):
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


@event.listens_for(TEST_ENGINE.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


# ── 4. Replace compliance_engine.database BEFORE compliance_engine.main is imported ──
async def _test_get_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


async def _test_check_db() -> bool:
    return True


_fake_db = types.ModuleType("compliance_engine.database")
_fake_db.engine = TEST_ENGINE
_fake_db.async_session = TestSession
_fake_db.get_session = _test_get_session
_fake_db.check_db_connection = _test_check_db
sys.modules["compliance_engine.database"] = _fake_db

# ── 5. Now import the app ──
from compliance_engine.config import FeatureFlags, settings  # noqa: E402
from compliance_engine.dependencies import (  # noqa: E402
    get_compliance_engine, get_feature_flags, get_framework_installer,
)
from compliance_engine.main import app as fastapi_app  # noqa: E402
from compliance_engine.models import *  # noqa: E402, F401, F403
from compliance_engine.models.base import Base  # noqa: E402
from compliance_engine.services.compliance_engine import ComplianceEngine  # noqa: E402
from compliance_engine.services.framework_installer import FrameworkInstaller  # noqa: E402


# ── Fixtures ──

@pytest_asyncio.fixture
async def setup_database():
    """Create all tables before the test, drop after. Pulled in by db and client."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return TestSession


@pytest.fixture
def installer() -> FrameworkInstaller:
    return FrameworkInstaller(TestSession, settings.FRAMEWORK_PACKS_DIR)


@pytest.fixture
def engine() -> ComplianceEngine:
    return ComplianceEngine(TestSession)


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags(enable_framework_engine=True)


@pytest_asyncio.fixture
async def client(setup_database, installer, engine) -> AsyncGenerator[AsyncClient, None]:
    fastapi_app.dependency_overrides[get_framework_installer] = lambda: installer
    fastapi_app.dependency_overrides[get_compliance_engine] = lambda: engine
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def disable_engine():
    fastapi_app.dependency_overrides[get_feature_flags] = lambda: FeatureFlags(enable_framework_engine=False)
    yield
    fastapi_app.dependency_overrides.pop(get_feature_flags, None)


@pytest_asyncio.fixture
async def db(setup_database) -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


# ── Seed data helpers ──

ORG_ID = "org-1"


@pytest_asyncio.fixture
async def entitled_org(db: AsyncSession) -> str:
    from compliance_engine.services.entitlements import FRAMEWORK_EVALUATIONS, grant_entitlement

    await grant_entitlement(db, ORG_ID, FRAMEWORK_EVALUATIONS)
    await db.commit()
    return ORG_ID


@pytest_asyncio.fixture
async def seed_controls(db: AsyncSession):
    """ISO27001 with four controls covering each status:

    A.1 high, approved evidence    -> compliant
    A.2 medium, no evidence        -> at_risk
    A.3 critical, no evidence      -> non_compliant
    A.4 not mandatory              -> not_applicable
    """
    from compliance_engine.models.compliance import (
        ComplianceControl, ComplianceFramework, ControlEvidence,
    )

    fw = ComplianceFramework(code="ISO27001", name="ISO/IEC 27001:2022")
    db.add(fw)
    await db.flush()

    specs = [
        ("A.1", "Policies", "Organizational", "high", True),
        ("A.2", "Awareness training", "People", "medium", True),
        ("A.3", "Access control", "Organizational", "critical", True),
        ("A.4", "Physical perimeters", "Physical", "low", False),
    ]
    controls = {}
    for code, title, category, risk, mandatory in specs:
        c = ComplianceControl(
            framework_id=fw.id, code=code, title=title, category=category,
            risk_level=risk, is_mandatory=mandatory,
        )
        db.add(c)
        await db.flush()
        controls[code] = c.id

    db.add(ControlEvidence(organization_id=ORG_ID, control_id=controls["A.1"], status="approved"))
    await db.commit()
    return fw.id, controls
