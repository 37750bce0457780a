"""Exceptions raised by the compliance engine services."""


class FrameworkPackError(ValueError):
    """A framework pack could not be parsed or lacks framework metadata."""


class EntitlementError(PermissionError):
    """The organization does not hold the requested capability."""

    def __init__(self, organization_id: str, feature_key: str):
        self.organization_id = organization_id
        self.feature_key = feature_key
        super().__init__(
            f"Organization '{organization_id}' is not entitled to '{feature_key}'"
        )


class ComplianceDataError(RuntimeError):
    """A compliance query failed while running in strict mode."""


class ComplianceBlockedError(RuntimeError):
    """An open compliance block prevents the gated action."""

    def __init__(self, gate_key: str, block_ids: list[int] | None = None):
        self.gate_key = gate_key
        self.block_ids = list(block_ids or [])
        super().__init__(
            f"Action '{gate_key}' is blocked by {len(self.block_ids)} unresolved compliance block(s)"
        )
