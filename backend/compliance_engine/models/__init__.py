from .base import Base
from .framework import (
    Framework,
    FrameworkDomain,
    FrameworkControl,
    ControlMapping,
    OrgFramework,
)
from .compliance import (
    ComplianceFramework,
    ComplianceControl,
    OrgEvidence,
    ControlEvidence,
    OrgControlMapping,
    OrgTask,
    ControlTask,
    OrgControlEvaluation,
    OrgComplianceStatus,
    OrgComplianceBlock,
)
from .audit import AuditEvent, OrgAuditLog
from .entitlement import OrgEntitlement

__all__ = [
    "Base",
    "Framework", "FrameworkDomain", "FrameworkControl", "ControlMapping", "OrgFramework",
    "ComplianceFramework", "ComplianceControl",
    "OrgEvidence", "ControlEvidence", "OrgControlMapping",
    "OrgTask", "ControlTask",
    "OrgControlEvaluation", "OrgComplianceStatus", "OrgComplianceBlock",
    "AuditEvent", "OrgAuditLog",
    "OrgEntitlement",
]
