"""FastAPI dependencies wiring the engine components to the process configuration."""
from functools import lru_cache

from compliance_engine.config import FeatureFlags, settings
from compliance_engine.database import async_session
from compliance_engine.services.compliance_engine import ComplianceEngine
from compliance_engine.services.framework_installer import FrameworkInstaller


def get_feature_flags() -> FeatureFlags:
    return FeatureFlags.from_settings(settings)


@lru_cache
def get_framework_installer() -> FrameworkInstaller:
    # One per process so bundled packs are installed once
    return FrameworkInstaller(async_session, settings.FRAMEWORK_PACKS_DIR)


@lru_cache
def get_compliance_engine() -> ComplianceEngine:
    return ComplianceEngine(async_session)
